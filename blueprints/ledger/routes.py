# blueprints/ledger/routes.py

from datetime import timedelta

from flask import current_app, request
from flask_login import current_user

from blueprints.params import (
    optional_date,
    optional_int,
    payload,
    require_date,
    require_int,
    runs_response,
)
from ledger import service
from ledger.clock import ledger_today
from ledger.errors import InvalidRequest
from permissions import READ_ROLES, WRITE_ROLES, role_required
from . import ledger_bp

DEFAULT_RANGE_DAYS = 30
RESET_CONFIRMATION = "RESET"


@ledger_bp.route("/entries")
@role_required(*READ_ROLES)
def list_entries():
    """Ledger rows of a location (optionally one item) for an inclusive day range."""
    location_id = require_int(request.args, "location_id", min_value=1)
    item_id = optional_int(request.args, "item_id", min_value=1)
    end_day = optional_date(request.args, "end") or ledger_today()
    start_day = optional_date(request.args, "start") or end_day - timedelta(days=DEFAULT_RANGE_DAYS)
    descending = (request.args.get("order") or "").lower() == "desc"

    entries = service.get_range(location_id, item_id, start_day, end_day, descending=descending)
    return {
        "location_id": location_id,
        "item_id": item_id,
        "start": start_day.isoformat(),
        "end": end_day.isoformat(),
        "entries": [entry.to_dict() for entry in entries],
    }


@ledger_bp.route("/entry")
@role_required(*READ_ROLES)
def get_entry():
    location_id = require_int(request.args, "location_id", min_value=1)
    item_id = require_int(request.args, "item_id", min_value=1)
    day = require_date(request.args, "day")
    backfill_missing = request.args.get("backfill") in ("1", "true", "yes")

    entry = service.get_entry(location_id, item_id, day, backfill_missing=backfill_missing)
    return entry.to_dict()


@ledger_bp.route("/day")
@role_required(*READ_ROLES)
def day_view():
    """One day of a location; rows missing for relevant items are created on the way."""
    location_id = require_int(request.args, "location_id", min_value=1)
    day = optional_date(request.args, "day") or ledger_today()

    entries = service.day_view(location_id, day)
    return {
        "location_id": location_id,
        "day": day.isoformat(),
        "entries": [entry.to_dict() for entry in entries],
        "negative_items": [entry.item_id for entry in entries if entry.is_negative],
    }


@ledger_bp.route("/opening", methods=["POST"])
@role_required(*WRITE_ROLES)
def edit_opening():
    data = payload()
    location_id = require_int(data, "location_id", min_value=1)
    item_id = require_int(data, "item_id", min_value=1)
    day = require_date(data, "day")
    opening_qty = require_int(data, "opening_qty")

    run = service.edit_opening(
        location_id,
        item_id,
        day,
        opening_qty,
        today=ledger_today(),
        user=current_user,
    )
    current_app.logger.info(
        "Opening edit processed",
        extra={"run_id": run.id, "status": run.status, "progress": run.progress_message},
    )
    return runs_response([run])


@ledger_bp.route("/resync", methods=["POST"])
@role_required(*WRITE_ROLES)
def resync():
    """Recount receipt and sale totals of one item from its events and cascade."""
    data = payload()
    location_id = require_int(data, "location_id", min_value=1)
    item_id = require_int(data, "item_id", min_value=1)
    start_day = require_date(data, "start")
    end_day = optional_date(data, "end")

    run = service.resync_item(
        location_id,
        item_id,
        start_day,
        end_day,
        today=ledger_today(),
        user=current_user,
    )
    return runs_response([run] if run is not None else [])


@ledger_bp.route("/autofill", methods=["POST"])
@role_required("manager")
def autofill():
    data = payload()
    location_id = require_int(data, "location_id", min_value=1)
    start_day = optional_date(data, "start")

    result = service.autofill(location_id, today=ledger_today(), start_day=start_day)
    return result.to_dict()


@ledger_bp.route("/runs/<int:run_id>")
@role_required(*READ_ROLES)
def get_run(run_id):
    return service.get_run(run_id).to_dict()


@ledger_bp.route("/runs/<int:run_id>/resume", methods=["POST"])
@role_required(*WRITE_ROLES)
def resume_run(run_id):
    run = service.resume_run(run_id, today=ledger_today())
    return runs_response([run])


@ledger_bp.route("/runs/<int:run_id>/cancel", methods=["POST"])
@role_required(*WRITE_ROLES)
def cancel_run(run_id):
    return service.cancel_run(run_id).to_dict()


@ledger_bp.route("/verify")
@role_required(*READ_ROLES)
def verify():
    location_id = require_int(request.args, "location_id", min_value=1)
    item_id = optional_int(request.args, "item_id", min_value=1)
    end_day = optional_date(request.args, "end") or ledger_today()
    start_day = optional_date(request.args, "start") or end_day - timedelta(days=DEFAULT_RANGE_DAYS)
    if start_day > end_day:
        raise InvalidRequest("start must not be after end", start=start_day, end=end_day)

    violations = service.verify(location_id, item_id, start_day, end_day)
    if violations:
        current_app.logger.warning(
            "Ledger continuity violations found",
            extra={"location_id": location_id, "violations": len(violations)},
        )
    return {
        "location_id": location_id,
        "item_id": item_id,
        "start": start_day.isoformat(),
        "end": end_day.isoformat(),
        "consistent": not violations,
        "violations": [violation.to_dict() for violation in violations],
    }


@ledger_bp.route("/reset", methods=["POST"])
@role_required("admin")
def reset_location():
    """Admin only: wipe a location's ledger, receipts and sales."""
    data = payload()
    location_id = require_int(data, "location_id", min_value=1)
    if data.get("confirm") != RESET_CONFIRMATION:
        raise InvalidRequest(f'confirm must be "{RESET_CONFIRMATION}"', field="confirm")

    counts = service.reset_location(location_id)
    return {"location_id": location_id, "deleted": counts}
