"""
Per-(location, item) serialization.

Two cascades over the same item would interleave their upserts and break
continuity even though every single write is consistent, so every pipeline
(resync + propagate, opening edit, day view, autofill of an item) holds
``key_lock`` for its whole run. On PostgreSQL each batch transaction
additionally takes a transaction-scoped advisory lock so that separate worker
processes are serialized too.

The registry only keeps locks that are held or waited on; a key's entry is
dropped when its last user leaves, so it does not grow with the catalogue.
"""

from __future__ import annotations

import logging
import threading
from contextlib import ExitStack, contextmanager
from typing import Iterable

from flask import current_app
from sqlalchemy import text

from extensions import db
from ledger.errors import PropagationBusy

logger = logging.getLogger(__name__)

_registry_guard = threading.Lock()
# key -> [lock, number of threads holding or waiting for it]
_key_locks: dict[tuple[int, int], list] = {}


def _checkout(key: tuple[int, int]) -> threading.Lock:
    with _registry_guard:
        slot = _key_locks.get(key)
        if slot is None:
            slot = [threading.Lock(), 0]
            _key_locks[key] = slot
        slot[1] += 1
        return slot[0]


def _checkin(key: tuple[int, int]) -> None:
    with _registry_guard:
        slot = _key_locks[key]
        slot[1] -= 1
        if slot[1] == 0:
            del _key_locks[key]


@contextmanager
def key_lock(location_id: int, item_id: int, timeout: float | None = None):
    """Hold the in-process lock for one (location, item) or raise PropagationBusy."""
    if timeout is None:
        timeout = float(current_app.config.get("LEDGER_LOCK_TIMEOUT", 30))

    key = (int(location_id), int(item_id))
    lock = _checkout(key)
    try:
        if not lock.acquire(timeout=timeout):
            logger.warning(
                "Ledger key lock timed out",
                extra={"location_id": location_id, "item_id": item_id, "timeout": timeout},
            )
            raise PropagationBusy(location_id, item_id, timeout)
        try:
            yield
        finally:
            lock.release()
    finally:
        _checkin(key)


@contextmanager
def hold_keys(location_id: int, item_ids: Iterable[int], timeout: float | None = None):
    """Hold ``key_lock`` for several items of one location, taken in item order."""
    with ExitStack() as stack:
        for item_id in sorted(set(item_ids)):
            stack.enter_context(key_lock(location_id, item_id, timeout=timeout))
        yield


def batch_lock(location_id: int, item_id: int) -> None:
    """Take the advisory lock for the current transaction; released on commit/rollback."""
    if db.engine.dialect.name != "postgresql":
        return

    db.session.execute(
        text("SELECT pg_advisory_xact_lock(:location_id, :item_id)"),
        {"location_id": int(location_id), "item_id": int(item_id)},
    )
