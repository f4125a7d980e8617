"""
Ledger Store: the only code that writes ``ledger_entries`` rows.

Writes are keyed by (location_id, item_id, day) and never create duplicates;
closing_qty is recomputed on every write, so every persisted row balances.
Nothing here commits. Callers commit per row (synchronizers, opening edits)
or per batch (propagation, autofill).
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timedelta

from sqlalchemy import func, or_
from sqlalchemy.exc import IntegrityError

from extensions import db
from ledger.errors import ConstraintViolation, NotFound
from models import LedgerEntry

logger = logging.getLogger(__name__)


def closing_for(opening_qty: int, receipt_qty: int, sale_qty: int) -> int:
    return opening_qty + receipt_qty - sale_qty


def find_entry(location_id: int, item_id: int, day: date) -> LedgerEntry | None:
    return LedgerEntry.query.filter_by(
        location_id=location_id, item_id=item_id, day=day
    ).one_or_none()


def get_entry(location_id: int, item_id: int, day: date) -> LedgerEntry:
    entry = find_entry(location_id, item_id, day)
    if entry is None:
        raise NotFound(location_id, item_id, day)
    return entry


def previous_closing(location_id: int, item_id: int, day: date) -> int:
    """Opening seed for ``day``: the previous calendar day's closing, else 0."""
    closing = (
        db.session.query(LedgerEntry.closing_qty)
        .filter(
            LedgerEntry.location_id == location_id,
            LedgerEntry.item_id == item_id,
            LedgerEntry.day == day - timedelta(days=1),
        )
        .scalar()
    )
    return int(closing) if closing is not None else 0


def _as_quantity(name: str, value, *, allow_negative: bool) -> int:
    try:
        qty = int(value)
    except (TypeError, ValueError) as exc:
        raise ConstraintViolation(f"{name} must be an integer", field=name) from exc

    if not allow_negative and qty < 0:
        raise ConstraintViolation(f"{name} cannot be negative", field=name, value=qty)
    return qty


def upsert(
    location_id: int,
    item_id: int,
    day: date,
    *,
    opening_qty: int,
    receipt_qty: int,
    sale_qty: int,
) -> LedgerEntry:
    """Insert or update the entry for its key, recomputing closing_qty.

    Writing the values a row already holds is a no-op.
    """
    opening_qty = _as_quantity("opening_qty", opening_qty, allow_negative=True)
    receipt_qty = _as_quantity("receipt_qty", receipt_qty, allow_negative=False)
    sale_qty = _as_quantity("sale_qty", sale_qty, allow_negative=False)
    closing_qty = closing_for(opening_qty, receipt_qty, sale_qty)

    entry = find_entry(location_id, item_id, day)
    if entry is None:
        entry = LedgerEntry(
            location_id=location_id,
            item_id=item_id,
            day=day,
            opening_qty=opening_qty,
            receipt_qty=receipt_qty,
            sale_qty=sale_qty,
            closing_qty=closing_qty,
        )
        db.session.add(entry)
        try:
            db.session.flush()
        except IntegrityError as exc:
            raise ConstraintViolation(
                "Ledger entry could not be inserted",
                location_id=location_id,
                item_id=item_id,
                day=day,
            ) from exc
        return entry

    if (
        entry.opening_qty == opening_qty
        and entry.receipt_qty == receipt_qty
        and entry.sale_qty == sale_qty
        and entry.closing_qty == closing_qty
    ):
        return entry

    entry.opening_qty = opening_qty
    entry.receipt_qty = receipt_qty
    entry.sale_qty = sale_qty
    entry.closing_qty = closing_qty
    entry.updated_at = datetime.utcnow()
    return entry


def entries_between(
    location_id: int,
    item_id: int | None,
    start_day: date,
    end_day: date,
    *,
    descending: bool = False,
) -> list[LedgerEntry]:
    q = LedgerEntry.query.filter(
        LedgerEntry.location_id == location_id,
        LedgerEntry.day >= start_day,
        LedgerEntry.day <= end_day,
    )
    if item_id is not None:
        q = q.filter(LedgerEntry.item_id == item_id)

    day_order = LedgerEntry.day.desc() if descending else LedgerEntry.day.asc()
    return q.order_by(day_order, LedgerEntry.item_id.asc()).all()


def item_ids_on(location_id: int, day: date) -> set[int]:
    return {
        item_id
        for (item_id,) in db.session.query(LedgerEntry.item_id)
        .filter(LedgerEntry.location_id == location_id, LedgerEntry.day == day)
        .all()
    }


def active_item_ids(location_id: int) -> list[int]:
    """Items with at least one nonzero ledger value anywhere in the location's history."""
    rows = (
        db.session.query(LedgerEntry.item_id)
        .filter(
            LedgerEntry.location_id == location_id,
            or_(
                LedgerEntry.opening_qty != 0,
                LedgerEntry.receipt_qty != 0,
                LedgerEntry.sale_qty != 0,
                LedgerEntry.closing_qty != 0,
            ),
        )
        .distinct()
        .order_by(LedgerEntry.item_id.asc())
        .all()
    )
    return [item_id for (item_id,) in rows]


def first_day(location_id: int) -> date | None:
    return (
        db.session.query(func.min(LedgerEntry.day))
        .filter(LedgerEntry.location_id == location_id)
        .scalar()
    )


def delete_location(location_id: int) -> int:
    """Remove every ledger row of a location. Only used by an explicit reset."""
    deleted = LedgerEntry.query.filter(LedgerEntry.location_id == location_id).delete(
        synchronize_session=False
    )
    logger.info(
        "Deleted ledger entries for location reset",
        extra={"location_id": location_id, "deleted": deleted},
    )
    return deleted
