# blueprints/receipts/routes.py
#
# Transfer permits and their receipt lines. Every change is written while the
# ledger locks of the items it touches are held, then each (item, day) is
# resynced and cascaded before the locks are released.

from flask import current_app, request
from flask_login import current_user
from sqlalchemy.exc import IntegrityError

from blueprints.params import (
    optional_date,
    payload,
    report_response,
    require_date,
    require_int,
)
from extensions import db
from ledger import service
from ledger.clock import ledger_today
from ledger.errors import ConstraintViolation, InvalidRequest
from models import ReceiptEvent, TransferPermit
from permissions import READ_ROLES, WRITE_ROLES, role_required
from . import receipts_bp


def _get_permit_or_404(permit_id: int) -> TransferPermit:
    return db.get_or_404(TransferPermit, permit_id)


def _parse_lines(raw_items) -> dict[int, int]:
    if not isinstance(raw_items, list) or not raw_items:
        raise InvalidRequest("items must be a non-empty list", field="items")

    lines: dict[int, int] = {}
    for raw in raw_items:
        if not isinstance(raw, dict):
            raise InvalidRequest("each item needs item_id and qty", field="items")
        item_id = require_int(raw, "item_id", min_value=1)
        qty = require_int(raw, "qty", min_value=1)
        if item_id in lines:
            raise InvalidRequest("an item can appear only once per permit", field="items", item_id=item_id)
        lines[item_id] = qty
    return lines


def _commit_or_conflict(message: str, **details) -> None:
    try:
        db.session.commit()
    except IntegrityError as exc:
        db.session.rollback()
        raise ConstraintViolation(message, **details) from exc


def _record(location_id: int, item_ids, write):
    return service.record_event_change(
        "receipt",
        location_id,
        item_ids,
        write,
        today=ledger_today(),
        user=current_user,
    )


@receipts_bp.route("/permits")
@role_required(*READ_ROLES)
def list_permits():
    location_id = require_int(request.args, "location_id", min_value=1)
    day = optional_date(request.args, "day")

    q = TransferPermit.query.filter(TransferPermit.location_id == location_id)
    if day is not None:
        q = q.filter(TransferPermit.permit_date == day)
    permits = q.order_by(TransferPermit.permit_date.desc(), TransferPermit.id.desc()).all()
    return {"permits": [permit.to_dict() for permit in permits]}


@receipts_bp.route("/permits", methods=["POST"])
@role_required(*WRITE_ROLES)
def create_permit():
    data = payload()
    location_id = require_int(data, "location_id", min_value=1)
    permit_no = (str(data.get("permit_no") or "")).strip()
    if not permit_no:
        raise InvalidRequest("permit_no is required", field="permit_no")
    permit_date = require_date(data, "permit_date")
    lines = _parse_lines(data.get("items"))

    permit = TransferPermit(
        permit_no=permit_no,
        location_id=location_id,
        permit_date=permit_date,
        party_name=(str(data.get("party_name") or "")).strip() or None,
        created_by_id=getattr(current_user, "id", None),
    )
    for item_id, qty in lines.items():
        permit.events.append(ReceiptEvent(item_id=item_id, qty=qty))

    def write():
        db.session.add(permit)
        _commit_or_conflict("permit number already used at this location", permit_no=permit_no)
        current_app.logger.info(
            "Transfer permit recorded",
            extra={"permit_id": permit.id, "location_id": location_id, "lines": len(lines)},
        )
        return [(item_id, permit_date) for item_id in lines]

    report = _record(location_id, list(lines), write)
    return report_response(report, created=True, permit=permit.to_dict())


@receipts_bp.route("/permits/<int:permit_id>", methods=["PATCH"])
@role_required(*WRITE_ROLES)
def update_permit(permit_id):
    """Change party or date; a date change moves every line to the new day."""
    permit = _get_permit_or_404(permit_id)
    data = payload()
    new_date = optional_date(data, "permit_date") or permit.permit_date
    item_ids = [event.item_id for event in permit.events]

    def write():
        old_date = permit.permit_date
        if "party_name" in data:
            permit.party_name = (str(data.get("party_name") or "")).strip() or None
        permit.permit_date = new_date
        _commit_or_conflict("permit could not be updated", permit_id=permit_id)

        if new_date == old_date:
            return []
        changes = []
        for item_id in item_ids:
            changes.extend([(item_id, old_date), (item_id, new_date)])
        return changes

    # party-only edits do not touch the ledger
    locked_items = item_ids if new_date != permit.permit_date else []
    report = _record(permit.location_id, locked_items, write)
    return report_response(report, permit=permit.to_dict())


@receipts_bp.route("/permits/<int:permit_id>", methods=["DELETE"])
@role_required(*WRITE_ROLES)
def delete_permit(permit_id):
    permit = _get_permit_or_404(permit_id)
    location_id = permit.location_id
    changes = [(event.item_id, permit.permit_date) for event in permit.events]

    def write():
        db.session.delete(permit)
        db.session.commit()
        current_app.logger.info("Transfer permit deleted", extra={"permit_id": permit_id})
        return changes

    report = _record(location_id, [item_id for item_id, _ in changes], write)
    return report_response(report, deleted_permit_id=permit_id)


@receipts_bp.route("/permits/<int:permit_id>/events", methods=["POST"])
@role_required(*WRITE_ROLES)
def add_event(permit_id):
    permit = _get_permit_or_404(permit_id)
    data = payload()
    item_id = require_int(data, "item_id", min_value=1)
    qty = require_int(data, "qty", min_value=1)
    event = ReceiptEvent(permit_id=permit.id, item_id=item_id, qty=qty)

    def write():
        db.session.add(event)
        _commit_or_conflict("item already on this permit", permit_id=permit.id, item_id=item_id)
        return [(item_id, permit.permit_date)]

    report = _record(permit.location_id, [item_id], write)
    return report_response(report, created=True, event=event.to_dict())


@receipts_bp.route("/events/<int:event_id>", methods=["PATCH"])
@role_required(*WRITE_ROLES)
def update_event(event_id):
    event = db.get_or_404(ReceiptEvent, event_id)
    qty = require_int(payload(), "qty", min_value=1)
    permit = event.permit

    def write():
        event.qty = qty
        db.session.commit()
        return [(event.item_id, permit.permit_date)]

    report = _record(permit.location_id, [event.item_id], write)
    return report_response(report, event=event.to_dict())


@receipts_bp.route("/events/<int:event_id>", methods=["DELETE"])
@role_required(*WRITE_ROLES)
def delete_event(event_id):
    event = db.get_or_404(ReceiptEvent, event_id)
    permit = event.permit
    location_id, item_id, day = permit.location_id, event.item_id, permit.permit_date

    def write():
        db.session.delete(event)
        db.session.commit()
        return [(item_id, day)]

    report = _record(location_id, [item_id], write)
    return report_response(report, deleted_event_id=event_id)
