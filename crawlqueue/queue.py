"""Crawl item queue management."""

import json
import time
from typing import Callable, Dict, List, Optional

from loguru import logger

from .exceptions import ContractViolation
from .models import TERMINAL_STATES, Item, ItemKey, ItemState
from .predicates import MATCH_ALL, Predicate, equals, is_in, key_equals
from .storage import Store

PENDING = equals("state", ItemState.PENDING)
IN_PROGRESS = equals("state", ItemState.IN_PROGRESS)
FINISHED = is_in("state", TERMINAL_STATES)


class QueueManager:
    """Owns every item state transition.

    The manager keeps no state of its own; all coordination between
    producers and workers happens through the store's conditional updates,
    so one instance may be shared freely or created per caller.
    """

    def __init__(self, store: Store, clock: Callable[[], float] = time.time):
        self.store = store
        self.clock = clock

    def _now(self) -> int:
        return int(self.clock())

    @staticmethod
    def _require_key(configuration: str, identifier: str) -> ItemKey:
        if not configuration or not identifier:
            raise ContractViolation("Items need a non-empty configuration and identifier")
        return ItemKey(configuration, identifier)

    def enqueue(self, item: Item) -> bool:
        """Add an item, or reset an existing one to PENDING.

        Message and claim token are cleared and the payload replaced, whatever
        state the item was in. Returns False if the store changed no row.
        """
        key = self._require_key(item.configuration, item.identifier)
        changed = self.store.upsert_reset(key, json.dumps(item.data), self._now())
        if changed != 1:
            logger.warning("Enqueue of {}/{} changed {} rows", key.configuration, key.identifier, changed)
            return False
        logger.debug("Enqueued {}/{}", key.configuration, key.identifier)
        return True

    def claim_batch(self, limit: Optional[int] = None) -> List[Item]:
        """Select up to ``limit`` pending items, oldest first.

        Nothing is claimed here; call ``claim_one`` for each candidate before
        processing it.
        """
        return self.list_pending(limit)

    def claim_one(self, configuration: str, identifier: str, claim_token: str) -> bool:
        """Move a PENDING item to IN_PROGRESS under ``claim_token``.

        Returns True only for the caller whose update won; a False means the
        item was claimed by someone else, re-enqueued, or does not exist.
        """
        key = self._require_key(configuration, identifier)
        if not claim_token:
            raise ContractViolation("A claim needs a non-empty token")
        changed = self.store.conditional_update(
            key,
            PENDING,
            {"state": ItemState.IN_PROGRESS, "hash": claim_token, "timestamp": self._now()},
        )
        if changed != 1:
            logger.debug("Lost claim on {}/{}", configuration, identifier)
            return False
        logger.debug("Claimed {}/{} with token {}", configuration, identifier, claim_token)
        return True

    def resolve(self, item: Item) -> bool:
        """Move an IN_PROGRESS item to SUCCESS or ERROR and drop its claim.

        When ``item.hash`` is set the update also requires the stored claim
        token to match. Returns False if the item is no longer in progress
        (for instance it was re-enqueued meanwhile).
        """
        if item.state not in TERMINAL_STATES:
            logger.warning(
                "Rejected resolve of {}/{} to {}", item.configuration, item.identifier, item.state.name
            )
            raise ContractViolation(f"An item can only be resolved to SUCCESS or ERROR, not {item.state.name}")
        key = self._require_key(item.configuration, item.identifier)
        guard = IN_PROGRESS
        if item.hash:
            guard = guard & equals("hash", item.hash)
        changed = self.store.conditional_update(
            key,
            guard,
            {"state": item.state, "message": item.message, "hash": "", "timestamp": self._now()},
        )
        if changed != 1:
            logger.debug("Resolve of {}/{} found no claimed row", key.configuration, key.identifier)
            return False
        logger.debug("Resolved {}/{} as {}", key.configuration, key.identifier, item.state.name)
        return True

    def _select(self, predicate: Predicate = MATCH_ALL, limit: Optional[int] = None) -> List[Item]:
        return [Item.from_row(row) for row in self.store.select_where(predicate, "timestamp", limit)]

    def get(self, configuration: str, identifier: str) -> Optional[Item]:
        rows = self.store.select_where(key_equals(configuration, identifier), "timestamp", 1)
        return Item.from_row(rows[0]) if rows else None

    def list_all(self) -> List[Item]:
        return self._select()

    def list_pending(self, limit: Optional[int] = None) -> List[Item]:
        return self._select(PENDING, limit)

    def list_in_progress(self) -> List[Item]:
        return self._select(IN_PROGRESS)

    def list_finished(self) -> List[Item]:
        return self._select(FINISHED)

    def list_successful(self) -> List[Item]:
        return self._select(equals("state", ItemState.SUCCESS))

    def list_failed(self) -> List[Item]:
        return self._select(equals("state", ItemState.ERROR))

    def count_all(self) -> int:
        return self.store.count_where()

    def count_finished(self) -> int:
        return self.store.count_where(FINISHED)

    def count_by_state(self) -> Dict[str, int]:
        """Item counts per state, plus ``total``."""
        stats = {state.label: self.store.count_where(equals("state", state)) for state in ItemState}
        stats["total"] = sum(stats.values())
        return stats

    def find_in_progress_by_token(self, claim_token: str) -> List[Item]:
        """Items currently IN_PROGRESS under ``claim_token``."""
        return self._select(IN_PROGRESS & equals("hash", claim_token))
