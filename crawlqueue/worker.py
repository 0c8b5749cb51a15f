"""Worker process for processing claimed crawl items."""

import signal
import time
import uuid
from typing import Callable, List, Optional

from loguru import logger

from .exceptions import QueueError, StoreUnavailable
from .models import Item, ItemState
from .queue import QueueManager

# Returns an optional success message; raising marks the item as ERROR.
Processor = Callable[[Item], Optional[str]]


class Worker:
    """Claims pending items and hands them to a processor."""

    def __init__(self, manager: QueueManager, processor: Processor, worker_id: int = 1, batch_size: int = 10):
        self.manager = manager
        self.processor = processor
        self.worker_id = worker_id
        self.batch_size = batch_size
        self.running = True
        self.current_item: Optional[Item] = None
        self.log = logger.bind(worker_id=worker_id)

    def _handle_shutdown(self, signum, frame):
        """Handle shutdown signal gracefully."""
        self.running = False
        if self.current_item:
            self.log.info(
                "Finishing current item {}/{}", self.current_item.configuration, self.current_item.identifier
            )

    def run(self, poll_interval: float = 1.0) -> None:
        """Run the worker loop until a shutdown signal arrives."""
        signal.signal(signal.SIGTERM, self._handle_shutdown)
        signal.signal(signal.SIGINT, self._handle_shutdown)

        self.log.info("Worker {} started", self.worker_id)
        while self.running:
            try:
                processed = self.run_once()
            except QueueError as e:
                self.log.error("Queue error, backing off: {}", e)
                processed = 0
            if not processed and self.running:
                time.sleep(poll_interval)
        self.log.info("Worker {} stopped", self.worker_id)

    def new_token(self) -> str:
        return f"{self.worker_id}-{uuid.uuid4().hex}"

    def claim(self, token: str) -> List[Item]:
        """Claim as many of the next pending items as possible under ``token``.

        Returns the candidates this worker won.
        """
        claimed = []
        for candidate in self.manager.claim_batch(self.batch_size):
            if self.manager.claim_one(candidate.configuration, candidate.identifier, token):
                claimed.append(candidate)
            else:
                self.log.debug("Skipping {}/{}, claimed elsewhere", candidate.configuration, candidate.identifier)
        return claimed

    def release(self, items: List[Item]) -> None:
        """Hand owned items back to PENDING after a store fault."""
        for item in items:
            try:
                self.manager.enqueue(item)
                self.log.warning("Returned {}/{} to the queue", item.configuration, item.identifier)
            except StoreUnavailable as e:
                self.log.error("Could not return {}/{} to the queue: {}", item.configuration, item.identifier, e)

    def run_once(self) -> int:
        """Claim one batch and process it. Returns the number of items processed."""
        token = self.new_token()
        claimed = self.claim(token)
        if not claimed:
            return 0

        try:
            items = self.manager.find_in_progress_by_token(token)
        except QueueError:
            self.release(claimed)
            raise
        # finish the whole claimed batch even after a shutdown request
        for item in items:
            self._process_item(item)
        return len(items)

    def _process_item(self, item: Item) -> None:
        """Process a single claimed item and record the outcome."""
        self.current_item = item
        try:
            self.log.info("Processing {}/{}", item.configuration, item.identifier)
            try:
                message = self.processor(item)
                outcome = item.model_copy(
                    update={"state": ItemState.SUCCESS, "message": "" if message is None else str(message)}
                )
            except Exception as e:
                outcome = item.model_copy(update={"state": ItemState.ERROR, "message": str(e) or type(e).__name__})
                self.log.warning("Item {}/{} failed: {}", item.configuration, item.identifier, outcome.message)

            try:
                resolved = self.manager.resolve(outcome)
            except StoreUnavailable as e:
                self.log.error("Could not record {}/{}: {}", item.configuration, item.identifier, e)
                self.release([item])
                return
            if resolved:
                self.log.info("Item {}/{} finished as {}", item.configuration, item.identifier, outcome.state.name)
            else:
                self.log.warning(
                    "Item {}/{} changed while processing, result dropped", item.configuration, item.identifier
                )
        finally:
            self.current_item = None
