"""
Event Synchronizers.

``receipts`` and ``sales`` keep a ledger cell's receipt_qty / sale_qty equal
to the sum of the underlying event rows for that exact (location, item, day).
They are recomputed from the event tables every time, never adjusted by
deltas, so the result does not depend on the order in which events were
inserted, updated or deleted.

A resync only touches its own cell. Cascading the new closing balance into
later days is the caller's job (see ``ledger.service``).
"""

from __future__ import annotations

import logging
from datetime import date
from typing import Callable

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError

from extensions import db
from ledger import store
from ledger.errors import ConstraintViolation
from models import ReceiptEvent, SaleEvent, TransferPermit

logger = logging.getLogger(__name__)

TotalsQuery = Callable[[int, int, date, date], list]


def _receipt_totals(location_id: int, item_id: int, start_day: date, end_day: date) -> list:
    return (
        db.session.query(TransferPermit.permit_date, func.sum(ReceiptEvent.qty))
        .join(TransferPermit, ReceiptEvent.permit_id == TransferPermit.id)
        .filter(
            TransferPermit.location_id == location_id,
            ReceiptEvent.item_id == item_id,
            TransferPermit.permit_date >= start_day,
            TransferPermit.permit_date <= end_day,
        )
        .group_by(TransferPermit.permit_date)
        .all()
    )


def _sale_totals(location_id: int, item_id: int, start_day: date, end_day: date) -> list:
    return (
        db.session.query(SaleEvent.sale_date, func.sum(SaleEvent.qty))
        .filter(
            SaleEvent.location_id == location_id,
            SaleEvent.item_id == item_id,
            SaleEvent.sale_date >= start_day,
            SaleEvent.sale_date <= end_day,
        )
        .group_by(SaleEvent.sale_date)
        .all()
    )


class EventSynchronizer:
    def __init__(self, name: str, field: str, totals_query: TotalsQuery):
        self.name = name
        self.field = field
        self._totals_query = totals_query

    def __repr__(self):
        return f"<EventSynchronizer {self.name} -> {self.field}>"

    def totals_between(
        self, location_id: int, item_id: int, start_day: date, end_day: date
    ) -> dict[date, int]:
        """Per-day event sums for an inclusive day range; days without events are absent."""
        return {
            day: int(total or 0)
            for day, total in self._totals_query(location_id, item_id, start_day, end_day)
        }

    def total(self, location_id: int, item_id: int, day: date) -> int:
        return self.totals_between(location_id, item_id, day, day).get(day, 0)

    def resync(self, location_id: int, item_id: int, day: date) -> int:
        """Recompute this aggregate for one cell, commit it, and return the cell's closing_qty."""
        try:
            entry = store.find_entry(location_id, item_id, day)
            if entry is None:
                values = seed_values(location_id, item_id, day)
            else:
                values = {
                    "opening_qty": entry.opening_qty,
                    "receipt_qty": entry.receipt_qty,
                    "sale_qty": entry.sale_qty,
                }
                values[self.field] = self.total(location_id, item_id, day)

            entry = store.upsert(location_id, item_id, day, **values)
            db.session.commit()
        except (SQLAlchemyError, ConstraintViolation) as exc:
            db.session.rollback()
            logger.exception(
                "Ledger resync failed",
                exc_info=exc,
                extra={
                    "synchronizer": self.name,
                    "location_id": location_id,
                    "item_id": item_id,
                    "day": day,
                },
            )
            raise

        logger.info(
            "Ledger cell resynced",
            extra={
                "synchronizer": self.name,
                "location_id": location_id,
                "item_id": item_id,
                "day": day,
                self.field: getattr(entry, self.field),
                "closing_qty": entry.closing_qty,
            },
        )
        return entry.closing_qty


receipts = EventSynchronizer("receipts", "receipt_qty", _receipt_totals)
sales = EventSynchronizer("sales", "sale_qty", _sale_totals)


def item_ids_with_events(location_id: int, day: date) -> set[int]:
    """Items with at least one receipt or sale at ``location_id`` on ``day``."""
    received = (
        db.session.query(ReceiptEvent.item_id)
        .join(TransferPermit, ReceiptEvent.permit_id == TransferPermit.id)
        .filter(TransferPermit.location_id == location_id, TransferPermit.permit_date == day)
        .distinct()
        .all()
    )
    sold = (
        db.session.query(SaleEvent.item_id)
        .filter(SaleEvent.location_id == location_id, SaleEvent.sale_date == day)
        .distinct()
        .all()
    )
    return {item_id for (item_id,) in received} | {item_id for (item_id,) in sold}


def seed_values(location_id: int, item_id: int, day: date) -> dict[str, int]:
    """Values for a brand-new cell: previous day's closing plus fresh event sums."""
    return {
        "opening_qty": store.previous_closing(location_id, item_id, day),
        "receipt_qty": receipts.total(location_id, item_id, day),
        "sale_qty": sales.total(location_id, item_id, day),
    }
