"""Queue error types."""


class QueueError(Exception):
    """Base class for queue errors."""


class ContractViolation(QueueError, ValueError):
    """A caller broke the queue contract (programming error)."""


class StoreUnavailable(QueueError):
    """The backing store could not be reached or failed to execute."""


class CorruptRecord(QueueError):
    """A persisted row could not be decoded into an item."""
