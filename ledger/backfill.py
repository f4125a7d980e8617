"""
Backfill / Initializer: create ledger rows on first demand.

A new row opens with the previous calendar day's closing balance (0 when
there is no such row) and takes its receipt/sale totals from the
synchronizers. Existing rows are returned untouched; repairing continuity
is the propagation engine's job, not this module's.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Callable

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from extensions import db
from ledger import store, sync
from ledger.errors import ConstraintViolation
from ledger.locks import batch_lock, hold_keys, key_lock
from models import LedgerEntry

logger = logging.getLogger(__name__)

ONE_DAY = timedelta(days=1)


def ensure(location_id: int, item_id: int, day: date, *, commit: bool = True) -> LedgerEntry:
    entry = store.find_entry(location_id, item_id, day)
    if entry is not None:
        return entry

    try:
        entry = store.upsert(location_id, item_id, day, **sync.seed_values(location_id, item_id, day))
        if commit:
            db.session.commit()
    except (SQLAlchemyError, ConstraintViolation):
        db.session.rollback()
        raise

    logger.debug(
        "Ledger entry backfilled",
        extra={"location_id": location_id, "item_id": item_id, "day": day},
    )
    return entry


def ensure_day(location_id: int, day: date) -> list[LedgerEntry]:
    """Rows for every item relevant to ``day``: carried over from the day before,
    already present, or touched by a receipt or sale that day."""
    item_ids = (
        store.item_ids_on(location_id, day - ONE_DAY)
        | store.item_ids_on(location_id, day)
        | sync.item_ids_with_events(location_id, day)
    )

    entries = []
    with hold_keys(location_id, item_ids):
        try:
            for item_id in sorted(item_ids):
                entries.append(ensure(location_id, item_id, day, commit=False))
            db.session.commit()
        except (SQLAlchemyError, ConstraintViolation):
            db.session.rollback()
            raise

    return entries


@dataclass
class AutofillResult:
    location_id: int
    start_day: date | None
    today: date
    item_ids: list[int] = field(default_factory=list)
    created: int = 0
    days_checked: int = 0

    def to_dict(self) -> dict:
        return {
            "location_id": self.location_id,
            "start_day": self.start_day.isoformat() if self.start_day else None,
            "today": self.today.isoformat(),
            "item_ids": self.item_ids,
            "created": self.created,
            "days_checked": self.days_checked,
        }


def autofill(
    location_id: int,
    *,
    today: date,
    start_day: date | None = None,
    batch_size: int | None = None,
    progress: Callable[[AutofillResult], None] | None = None,
) -> AutofillResult:
    """Ensure a row for every active item on every day from ``start_day`` through ``today``.

    Only items with a nonzero ledger value somewhere in the location's history
    are filled, so items never stocked here do not get empty rows.
    """
    if batch_size is None:
        batch_size = current_app.config.get("LEDGER_BATCH_SIZE", 30)
    batch_size = max(int(batch_size), 1)

    if start_day is None:
        start_day = store.first_day(location_id)

    result = AutofillResult(location_id=location_id, start_day=start_day, today=today)
    if start_day is None or start_day > today:
        return result

    result.item_ids = store.active_item_ids(location_id)
    for item_id in result.item_ids:
        with key_lock(location_id, item_id):
            current = start_day
            while current <= today:
                window_end = min(current + timedelta(days=batch_size - 1), today)
                try:
                    batch_lock(location_id, item_id)
                    while current <= window_end:
                        if store.find_entry(location_id, item_id, current) is None:
                            ensure(location_id, item_id, current, commit=False)
                            result.created += 1
                        result.days_checked += 1
                        current += ONE_DAY
                    db.session.commit()
                except (SQLAlchemyError, ConstraintViolation):
                    db.session.rollback()
                    logger.exception(
                        "Ledger autofill batch failed",
                        extra={"location_id": location_id, "item_id": item_id, "day": current},
                    )
                    raise

                if progress is not None:
                    progress(result)

    logger.info(
        "Ledger autofill complete",
        extra={
            "location_id": location_id,
            "start_day": start_day,
            "today": today,
            "items": len(result.item_ids),
            "created": result.created,
        },
    )
    return result
