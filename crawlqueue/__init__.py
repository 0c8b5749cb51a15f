"""Work-queue core for crawl items."""

from .exceptions import ContractViolation, CorruptRecord, QueueError, StoreUnavailable
from .models import Config, Item, ItemKey, ItemState
from .queue import QueueManager
from .storage import JsonFileStore, SqliteStore, Store, create_store

__all__ = [
    "Config",
    "ContractViolation",
    "CorruptRecord",
    "Item",
    "ItemKey",
    "ItemState",
    "JsonFileStore",
    "QueueError",
    "QueueManager",
    "SqliteStore",
    "Store",
    "StoreUnavailable",
    "create_store",
]

__version__ = "1.0.0"
