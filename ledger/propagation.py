"""
Propagation Engine.

Given a cell whose opening, receipt or sale value just changed, restore the
closing balance of that cell and the day-to-day carry for every later day up
to ``today`` (inclusive):

    closing(d)   = opening(d) + receipt(d) - sale(d)
    opening(d+1) = closing(d)

Later days always take receipt/sale from the synchronizers' fresh totals,
never from the stored row, and rows missing along the way are created.

Days are handled strictly in calendar order, ``batch_size`` days per
transaction. A failed batch is rolled back and reported through
``PropagationInterrupted``; every day up to ``last_committed_day`` is
consistent and ``resume()`` from ``resume_from`` finishes the job with the
same result as an uninterrupted run.
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
from ledger.errors import ConstraintViolation, PropagationInterrupted
from ledger.locks import batch_lock
from models import (
    RUN_STATUS_CANCELLED,
    RUN_STATUS_COMPLETE,
    RUN_STATUS_INTERRUPTED,
    RUN_STATUS_RUNNING,
)

logger = logging.getLogger(__name__)

ONE_DAY = timedelta(days=1)


@dataclass
class PropagationResult:
    location_id: int
    item_id: int
    start_day: date
    today: date
    days_total: int
    days_done: int = 0
    last_committed_day: date | None = None
    status: str = RUN_STATUS_RUNNING
    negative_days: list[date] = field(default_factory=list)

    @property
    def fully_consistent(self) -> bool:
        return self.status == RUN_STATUS_COMPLETE

    @property
    def resume_from(self) -> date | None:
        """First day still to be re-derived, or None once the run is complete."""
        if self.status == RUN_STATUS_COMPLETE:
            return None
        if self.last_committed_day is None:
            return self.start_day
        return self.last_committed_day + ONE_DAY

    @property
    def progress_message(self) -> str:
        return f"updated {self.days_done} of {self.days_total} days"

    def to_dict(self) -> dict:
        return {
            "location_id": self.location_id,
            "item_id": self.item_id,
            "start_day": self.start_day.isoformat(),
            "today": self.today.isoformat(),
            "days_total": self.days_total,
            "days_done": self.days_done,
            "last_committed_day": self.last_committed_day.isoformat() if self.last_committed_day else None,
            "resume_from": self.resume_from.isoformat() if self.resume_from else None,
            "status": self.status,
            "fully_consistent": self.fully_consistent,
            "progress": self.progress_message,
            "negative_days": [day.isoformat() for day in self.negative_days],
        }


ProgressCallback = Callable[[PropagationResult], None]
ContinueCheck = Callable[[], bool]


def _batch_size(batch_size: int | None) -> int:
    if batch_size is None:
        batch_size = current_app.config.get("LEDGER_BATCH_SIZE", 30)
    return max(int(batch_size), 1)


def _interrupt(result: PropagationResult, exc: BaseException, failed_day: date) -> PropagationInterrupted:
    db.session.rollback()
    result.status = RUN_STATUS_INTERRUPTED
    logger.error(
        "Ledger propagation interrupted",
        extra={
            "location_id": result.location_id,
            "item_id": result.item_id,
            "failed_day": failed_day,
            "last_committed_day": result.last_committed_day,
            "days_done": result.days_done,
            "days_total": result.days_total,
            "cause": repr(exc),
        },
    )
    return PropagationInterrupted(result, cause=exc)


def _recompute_start(location_id: int, item_id: int, day: date, *, reseed: bool):
    if not reseed:
        # the changed cell itself: its stored opening/receipt/sale are authoritative
        entry = store.get_entry(location_id, item_id, day)
        return store.upsert(
            location_id,
            item_id,
            day,
            opening_qty=entry.opening_qty,
            receipt_qty=entry.receipt_qty,
            sale_qty=entry.sale_qty,
        )

    previous = store.find_entry(location_id, item_id, day - ONE_DAY)
    if previous is not None:
        opening = previous.closing_qty
    else:
        existing = store.find_entry(location_id, item_id, day)
        opening = existing.opening_qty if existing is not None else 0

    return store.upsert(
        location_id,
        item_id,
        day,
        opening_qty=opening,
        receipt_qty=sync.receipts.total(location_id, item_id, day),
        sale_qty=sync.sales.total(location_id, item_id, day),
    )


def propagate(
    location_id: int,
    item_id: int,
    day: date,
    *,
    today: date,
    batch_size: int | None = None,
    reseed: bool = False,
    progress: ProgressCallback | None = None,
    should_continue: ContinueCheck | None = None,
) -> PropagationResult:
    """Cascade the closing balance of ``day`` forward through ``today``.

    ``reseed=False`` treats ``day`` as the edited cell (must exist, opening
    kept as stored). ``reseed=True`` re-derives ``day`` itself from the
    previous day first; that is how an interrupted run is resumed.

    ``progress`` is called after every committed batch. ``should_continue``
    is checked before every batch; returning False stops the run as
    "cancelled", which leaves the ledger consistent up to
    ``last_committed_day``.

    Raises NotFound when ``day`` has no entry and ``reseed`` is False, and
    PropagationInterrupted when a batch cannot be committed.
    """
    size = _batch_size(batch_size)
    result = PropagationResult(
        location_id=location_id,
        item_id=item_id,
        start_day=day,
        today=today,
        days_total=max((today - day).days, 0),
    )

    try:
        batch_lock(location_id, item_id)
        entry = _recompute_start(location_id, item_id, day, reseed=reseed)
        db.session.commit()
    except (SQLAlchemyError, ConstraintViolation) as exc:
        raise _interrupt(result, exc, day) from exc
    except Exception:
        db.session.rollback()
        raise

    if entry.is_negative:
        result.negative_days.append(day)
    result.last_committed_day = day
    next_opening = entry.closing_qty

    current = day + ONE_DAY
    while current <= today:
        if should_continue is not None and not should_continue():
            result.status = RUN_STATUS_CANCELLED
            logger.info(
                "Ledger propagation paused",
                extra={
                    "location_id": location_id,
                    "item_id": item_id,
                    "resume_from": result.resume_from,
                    "days_done": result.days_done,
                    "days_total": result.days_total,
                },
            )
            return result

        window_end = min(current + timedelta(days=size - 1), today)
        batch_negative: list[date] = []
        processing = current
        try:
            batch_lock(location_id, item_id)
            receipt_totals = sync.receipts.totals_between(location_id, item_id, current, window_end)
            sale_totals = sync.sales.totals_between(location_id, item_id, current, window_end)

            while processing <= window_end:
                entry = store.upsert(
                    location_id,
                    item_id,
                    processing,
                    opening_qty=next_opening,
                    receipt_qty=receipt_totals.get(processing, 0),
                    sale_qty=sale_totals.get(processing, 0),
                )
                if entry.is_negative:
                    batch_negative.append(processing)
                next_opening = entry.closing_qty
                processing += ONE_DAY

            db.session.commit()
        except (SQLAlchemyError, ConstraintViolation) as exc:
            raise _interrupt(result, exc, processing) from exc

        result.days_done += (window_end - current).days + 1
        result.last_committed_day = window_end
        result.negative_days.extend(batch_negative)
        logger.debug(
            "Ledger propagation batch committed",
            extra={
                "location_id": location_id,
                "item_id": item_id,
                "batch_start": current,
                "batch_end": window_end,
                "days_done": result.days_done,
                "days_total": result.days_total,
            },
        )
        if progress is not None:
            progress(result)

        current = window_end + ONE_DAY

    result.status = RUN_STATUS_COMPLETE
    if result.negative_days:
        logger.warning(
            "Ledger propagation produced negative closing stock",
            extra={
                "location_id": location_id,
                "item_id": item_id,
                "first_negative_day": result.negative_days[0],
                "negative_days": len(result.negative_days),
            },
        )
    logger.info(
        "Ledger propagation complete",
        extra={
            "location_id": location_id,
            "item_id": item_id,
            "start_day": day,
            "today": today,
            "days_total": result.days_total,
        },
    )
    return result


def resume(
    location_id: int,
    item_id: int,
    day: date,
    *,
    today: date,
    batch_size: int | None = None,
    progress: ProgressCallback | None = None,
    should_continue: ContinueCheck | None = None,
) -> PropagationResult:
    """Continue a cascade from ``day``, re-deriving ``day`` from the day before it."""
    return propagate(
        location_id,
        item_id,
        day,
        today=today,
        batch_size=batch_size,
        reseed=True,
        progress=progress,
        should_continue=should_continue,
    )
