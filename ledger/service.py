"""
Entry points used by the blueprints and CLI commands.

Every mutation follows the same pipeline, serialized per (location, item):

    opening edit  -> write the cell          -> propagate
    receipt/sale  -> save the event, resync  -> propagate from the earliest day

Event changes take the item locks before the event row is written, so a busy
item rejects the change instead of leaving stale totals behind. Each cascade
is tracked by a ``PropagationRun`` row that is updated after every committed
batch, so callers can report "updated N of M days" and resume a run that was
interrupted or stopped between batches.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Callable, Iterable

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from extensions import db
from ledger import backfill, continuity, propagation, store, sync
from ledger.errors import ConstraintViolation, InvalidRequest, LedgerError, PropagationInterrupted, RunNotFound
from ledger.locks import hold_keys, key_lock
from models import (
    RUN_STATUS_CANCELLED,
    RUN_STATUS_COMPLETE,
    RUN_STATUS_RUNNING,
    RUN_TRIGGER_MANUAL,
    RUN_TRIGGER_OPENING_EDIT,
    RUN_TRIGGER_RECEIPT,
    RUN_TRIGGER_RESYNC,
    RUN_TRIGGER_SALE,
    LedgerEntry,
    PropagationRun,
    ReceiptEvent,
    SaleEvent,
    TransferPermit,
)

logger = logging.getLogger(__name__)

ONE_DAY = timedelta(days=1)

EVENT_KINDS = {
    "receipt": (sync.receipts, RUN_TRIGGER_RECEIPT),
    "sale": (sync.sales, RUN_TRIGGER_SALE),
}


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------

def get_range(
    location_id: int,
    item_id: int | None,
    start_day: date,
    end_day: date,
    *,
    descending: bool = False,
) -> list[LedgerEntry]:
    if start_day > end_day:
        raise InvalidRequest("start must not be after end", start=start_day, end=end_day)
    return store.entries_between(location_id, item_id, start_day, end_day, descending=descending)


def get_entry(location_id: int, item_id: int, day: date, *, backfill_missing: bool = False) -> LedgerEntry:
    if backfill_missing:
        with key_lock(location_id, item_id):
            return backfill.ensure(location_id, item_id, day)
    return store.get_entry(location_id, item_id, day)


def day_view(location_id: int, day: date) -> list[LedgerEntry]:
    return backfill.ensure_day(location_id, day)


def verify(location_id: int, item_id: int | None, start_day: date, end_day: date):
    """Arithmetic, carry-over and event-total violations; never corrects anything."""
    return continuity.find_violations(location_id, item_id, start_day, end_day, check_aggregates=True)


def assert_consistent(location_id: int, item_id: int | None, start_day: date, end_day: date) -> None:
    continuity.assert_consistent(location_id, item_id, start_day, end_day, check_aggregates=True)


# ---------------------------------------------------------------------------
# Run bookkeeping
# ---------------------------------------------------------------------------

def _start_run(location_id: int, item_id: int, trigger: str, start_day: date, today: date, user=None) -> PropagationRun:
    run = PropagationRun(
        location_id=location_id,
        item_id=item_id,
        trigger=trigger,
        start_day=start_day,
        target_day=today,
        days_total=max((today - start_day).days, 0),
        days_done=0,
        status=RUN_STATUS_RUNNING,
        created_by_id=getattr(user, "id", None),
    )
    db.session.add(run)
    db.session.commit()
    return run


def _record_progress(run: PropagationRun, result: propagation.PropagationResult) -> None:
    run.last_committed_day = result.last_committed_day
    if result.last_committed_day is not None:
        run.days_done = min(max((result.last_committed_day - run.start_day).days, 0), run.days_total)
    run.resume_from = result.resume_from


def _finish_run(run: PropagationRun, result: propagation.PropagationResult, error: str | None = None) -> None:
    _record_progress(run, result)
    run.status = result.status
    run.error = error
    if result.status == RUN_STATUS_COMPLETE:
        run.days_done = run.days_total
    db.session.commit()


def _run_cascade(
    run: PropagationRun,
    *,
    day: date,
    today: date,
    reseed: bool,
    batch_size: int | None = None,
    max_batches: int | None = None,
) -> PropagationRun:
    if max_batches is None:
        max_batches = int(current_app.config.get("LEDGER_MAX_BATCHES_PER_REQUEST", 0) or 0)

    batches = 0
    stop_reason = None

    def progress(result: propagation.PropagationResult) -> None:
        nonlocal batches
        batches += 1
        _record_progress(run, result)
        db.session.commit()

    def should_continue() -> bool:
        nonlocal stop_reason
        if max_batches and batches >= max_batches:
            stop_reason = f"stopped after {batches} batch(es); resume to continue"
            return False
        db.session.refresh(run)
        if run.status == RUN_STATUS_CANCELLED:
            stop_reason = "cancelled"
            return False
        return True

    try:
        result = propagation.propagate(
            run.location_id,
            run.item_id,
            day,
            today=today,
            batch_size=batch_size,
            reseed=reseed,
            progress=progress,
            should_continue=should_continue,
        )
    except PropagationInterrupted as exc:
        _finish_run(run, exc.result, error=repr(exc.cause) if exc.cause else exc.message)
        exc.run = run
        exc.details["run_id"] = run.id
        raise

    _finish_run(run, result, error=stop_reason)
    return run


def get_run(run_id: int) -> PropagationRun:
    run = db.session.get(PropagationRun, run_id)
    if run is None:
        raise RunNotFound(run_id)
    return run


def cancel_run(run_id: int) -> PropagationRun:
    """Ask a running cascade to stop before its next batch."""
    run = get_run(run_id)
    if run.status == RUN_STATUS_RUNNING:
        run.status = RUN_STATUS_CANCELLED
        run.error = "cancelled"
        db.session.commit()
        logger.info("Propagation run cancelled", extra={"run_id": run.id})
    return run


def resume_run(
    run_id: int,
    *,
    today: date,
    batch_size: int | None = None,
    max_batches: int | None = None,
) -> PropagationRun:
    """Continue an interrupted or stopped run from the first day it did not commit."""
    run = get_run(run_id)
    if run.status == RUN_STATUS_COMPLETE:
        return run

    with key_lock(run.location_id, run.item_id):
        run.status = RUN_STATUS_RUNNING
        run.error = None
        run.target_day = max(today, run.start_day)
        run.days_total = max((run.target_day - run.start_day).days, 0)
        db.session.commit()

        logger.info(
            "Resuming propagation run",
            extra={"run_id": run.id, "resume_from": run.resume_from, "today": today},
        )
        if run.last_committed_day is None:
            # nothing committed yet: the start cell is still the authoritative anchor
            return _run_cascade(run, day=run.start_day, today=today, reseed=False,
                                batch_size=batch_size, max_batches=max_batches)

        resume_day = run.last_committed_day + ONE_DAY
        if resume_day > today:
            run.status = RUN_STATUS_COMPLETE
            run.days_done = run.days_total
            run.resume_from = None
            db.session.commit()
            return run

        return _run_cascade(run, day=resume_day, today=today, reseed=True,
                            batch_size=batch_size, max_batches=max_batches)


# ---------------------------------------------------------------------------
# Mutations
# ---------------------------------------------------------------------------

def edit_opening(
    location_id: int,
    item_id: int,
    day: date,
    new_value: int,
    *,
    today: date,
    user=None,
    batch_size: int | None = None,
    max_batches: int | None = None,
) -> PropagationRun:
    """Override one day's opening balance and cascade the change through ``today``."""
    try:
        opening_qty = int(new_value)
    except (TypeError, ValueError) as exc:
        raise InvalidRequest("opening_qty must be an integer", opening_qty=new_value) from exc

    with key_lock(location_id, item_id):
        try:
            entry = store.find_entry(location_id, item_id, day)
            if entry is None:
                values = sync.seed_values(location_id, item_id, day)
            else:
                values = {"receipt_qty": entry.receipt_qty, "sale_qty": entry.sale_qty}
            values["opening_qty"] = opening_qty
            entry = store.upsert(location_id, item_id, day, **values)
            db.session.commit()
        except (SQLAlchemyError, ConstraintViolation):
            db.session.rollback()
            raise

        logger.info(
            "Opening balance edited",
            extra={
                "location_id": location_id,
                "item_id": item_id,
                "day": day,
                "opening_qty": opening_qty,
                "closing_qty": entry.closing_qty,
            },
        )
        run = _start_run(location_id, item_id, RUN_TRIGGER_OPENING_EDIT, day, today, user)
        return _run_cascade(run, day=day, today=today, reseed=False,
                            batch_size=batch_size, max_batches=max_batches)


def repropagate(
    location_id: int,
    item_id: int,
    day: date,
    *,
    today: date,
    reseed: bool = False,
    user=None,
    batch_size: int | None = None,
) -> PropagationRun:
    """Cascade from an existing cell without changing it (CLI / repair use)."""
    with key_lock(location_id, item_id):
        if not reseed:
            store.get_entry(location_id, item_id, day)
        run = _start_run(location_id, item_id, RUN_TRIGGER_MANUAL, day, today, user)
        return _run_cascade(run, day=day, today=today, reseed=reseed,
                            batch_size=batch_size, max_batches=0)


def _sync_item(
    kind: str,
    location_id: int,
    item_id: int,
    days: Iterable[date],
    *,
    today: date,
    user=None,
    batch_size: int | None = None,
    max_batches: int | None = None,
) -> PropagationRun:
    # caller holds key_lock for (location_id, item_id)
    synchronizer, trigger = EVENT_KINDS[kind]
    ordered_days = sorted(set(days))
    if not ordered_days:
        raise InvalidRequest("at least one day is required")

    # a failed resync propagates to the caller; nothing is cascaded from stale totals
    for day in ordered_days:
        synchronizer.resync(location_id, item_id, day)

    run = _start_run(location_id, item_id, trigger, ordered_days[0], today, user)
    return _run_cascade(run, day=ordered_days[0], today=today, reseed=False,
                        batch_size=batch_size, max_batches=max_batches)


def _event_pipeline(
    kind: str,
    location_id: int,
    item_id: int,
    days: Iterable[date],
    *,
    today: date,
    user=None,
    batch_size: int | None = None,
    max_batches: int | None = None,
) -> PropagationRun:
    with key_lock(location_id, item_id):
        return _sync_item(kind, location_id, item_id, days, today=today, user=user,
                          batch_size=batch_size, max_batches=max_batches)


def receipt_changed(location_id: int, item_id: int, *days: date, today: date, user=None, **options) -> PropagationRun:
    return _event_pipeline("receipt", location_id, item_id, days, today=today, user=user, **options)


def sale_changed(location_id: int, item_id: int, *days: date, today: date, user=None, **options) -> PropagationRun:
    return _event_pipeline("sale", location_id, item_id, days, today=today, user=user, **options)


@dataclass
class UnsyncedItem:
    """An item whose event change is saved but whose ledger rows were not resynced."""

    item_id: int
    days: list[date]
    error: str
    message: str

    def to_dict(self) -> dict:
        return {
            "item_id": self.item_id,
            "days": [day.isoformat() for day in self.days],
            "error": self.error,
            "message": self.message,
        }


@dataclass
class EventSyncReport:
    runs: list[PropagationRun] = field(default_factory=list)
    unsynced: list[UnsyncedItem] = field(default_factory=list)

    @property
    def fully_consistent(self) -> bool:
        return not self.unsynced and all(run.fully_consistent for run in self.runs)


def notify_events(
    kind: str,
    location_id: int,
    changes: Iterable[tuple[int, date]],
    *,
    today: date,
    user=None,
    locked: bool = False,
) -> EventSyncReport:
    """Run the pipeline for every (item, day) touched by one event mutation.

    Days of the same item share one cascade starting at the earliest day. An
    interrupted cascade is recorded on its run; an item whose resync failed is
    listed in ``unsynced`` so the caller can retry it with ``resync_item``.
    Neither stops the other items. With ``locked`` the caller already holds
    ``key_lock`` for every item in ``changes``.
    """
    if kind not in EVENT_KINDS:
        raise InvalidRequest(f"unknown event kind {kind!r}")

    days_by_item: dict[int, set[date]] = defaultdict(set)
    for item_id, day in changes:
        days_by_item[item_id].add(day)

    pipeline = _sync_item if locked else _event_pipeline
    report = EventSyncReport()
    for item_id in sorted(days_by_item):
        try:
            report.runs.append(
                pipeline(kind, location_id, item_id, days_by_item[item_id], today=today, user=user)
            )
        except PropagationInterrupted as exc:
            logger.warning(
                "Event cascade interrupted; run left resumable",
                extra={"location_id": location_id, "item_id": item_id, "resume_from": exc.result.resume_from},
            )
            report.runs.append(exc.run)
        except (LedgerError, SQLAlchemyError) as exc:
            db.session.rollback()
            logger.exception(
                "Event change saved but ledger not resynced",
                extra={"location_id": location_id, "item_id": item_id, "kind": kind},
            )
            if isinstance(exc, LedgerError):
                error, message = exc.code, exc.message
            else:
                error, message = "database_error", str(exc)
            report.unsynced.append(
                UnsyncedItem(item_id=item_id, days=sorted(days_by_item[item_id]), error=error, message=message)
            )
    return report


def record_event_change(
    kind: str,
    location_id: int,
    item_ids: Iterable[int],
    write: Callable[[], Iterable[tuple[int, date]]],
    *,
    today: date,
    user=None,
) -> EventSyncReport:
    """Save an event change and resync the ledger while every touched item is locked.

    ``write`` commits the event rows and returns the (item, day) pairs it
    touched. If any item is busy, ``PropagationBusy`` is raised before
    ``write`` runs, so nothing is saved.
    """
    if kind not in EVENT_KINDS:
        raise InvalidRequest(f"unknown event kind {kind!r}")

    with hold_keys(location_id, item_ids):
        changes = list(write())
        return notify_events(kind, location_id, changes, today=today, user=user, locked=True)


def resync_item(
    location_id: int,
    item_id: int,
    start_day: date,
    end_day: date | None = None,
    *,
    today: date,
    user=None,
    batch_size: int | None = None,
    max_batches: int | None = None,
) -> PropagationRun | None:
    """Recompute receipt and sale totals of one item over a day range, then cascade.

    Days with a ledger row or with events are resynced. Returns ``None`` when
    the range holds neither.
    """
    end_day = end_day or start_day
    if start_day > end_day:
        raise InvalidRequest("start must not be after end", start=start_day, end=end_day)

    with key_lock(location_id, item_id):
        days = {entry.day for entry in store.entries_between(location_id, item_id, start_day, end_day)}
        for synchronizer in (sync.receipts, sync.sales):
            days.update(synchronizer.totals_between(location_id, item_id, start_day, end_day))
        if not days:
            return None

        for day in sorted(days):
            for synchronizer in (sync.receipts, sync.sales):
                synchronizer.resync(location_id, item_id, day)

        first_day = min(days)
        logger.info(
            "Ledger totals resynced",
            extra={"location_id": location_id, "item_id": item_id, "start_day": first_day, "days": len(days)},
        )
        run = _start_run(location_id, item_id, RUN_TRIGGER_RESYNC, first_day, today, user)
        return _run_cascade(run, day=first_day, today=today, reseed=False,
                            batch_size=batch_size, max_batches=max_batches)


def autofill(location_id: int, *, today: date, start_day: date | None = None, batch_size: int | None = None):
    return backfill.autofill(location_id, today=today, start_day=start_day, batch_size=batch_size)


def reset_location(location_id: int) -> dict:
    """Delete every sale, receipt, permit, run and ledger row of a location."""
    try:
        permit_ids = [
            permit_id
            for (permit_id,) in db.session.query(TransferPermit.id)
            .filter(TransferPermit.location_id == location_id)
            .all()
        ]
        counts = {
            "sale_events": SaleEvent.query.filter(SaleEvent.location_id == location_id).delete(
                synchronize_session=False
            ),
            "receipt_events": 0,
            "transfer_permits": 0,
        }
        if permit_ids:
            counts["receipt_events"] = ReceiptEvent.query.filter(
                ReceiptEvent.permit_id.in_(permit_ids)
            ).delete(synchronize_session=False)
            counts["transfer_permits"] = TransferPermit.query.filter(
                TransferPermit.id.in_(permit_ids)
            ).delete(synchronize_session=False)
        counts["propagation_runs"] = PropagationRun.query.filter(
            PropagationRun.location_id == location_id
        ).delete(synchronize_session=False)
        counts["ledger_entries"] = store.delete_location(location_id)
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception("Location reset failed", extra={"location_id": location_id})
        raise

    # deleted permits may still sit in the identity map
    db.session.expire_all()
    logger.warning("Location data reset", extra={"location_id": location_id, **counts})
    return counts
