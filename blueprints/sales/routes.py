# blueprints/sales/routes.py
#
# Sale events. Each change is written while the item's ledger lock is held,
# then the touched days are resynced and cascaded before the lock is released.

from flask import request
from flask_login import current_user

from blueprints.params import (
    optional_date,
    optional_int,
    payload,
    report_response,
    require_date,
    require_int,
)
from extensions import db
from ledger import service
from ledger.clock import ledger_today
from models import SaleEvent
from permissions import READ_ROLES, WRITE_ROLES, role_required
from . import sales_bp


def _record(location_id: int, item_id: int, write):
    return service.record_event_change(
        "sale",
        location_id,
        [item_id],
        write,
        today=ledger_today(),
        user=current_user,
    )


@sales_bp.route("/", strict_slashes=False)
@role_required(*READ_ROLES)
def list_sales():
    location_id = require_int(request.args, "location_id", min_value=1)
    day = optional_date(request.args, "day") or ledger_today()
    item_id = optional_int(request.args, "item_id", min_value=1)

    q = SaleEvent.query.filter(SaleEvent.location_id == location_id, SaleEvent.sale_date == day)
    if item_id is not None:
        q = q.filter(SaleEvent.item_id == item_id)
    sales = q.order_by(SaleEvent.item_id.asc(), SaleEvent.id.asc()).all()
    return {"day": day.isoformat(), "sales": [sale.to_dict() for sale in sales]}


@sales_bp.route("/", methods=["POST"], strict_slashes=False)
@role_required(*WRITE_ROLES)
def record_sale():
    data = payload()
    sale = SaleEvent(
        location_id=require_int(data, "location_id", min_value=1),
        item_id=require_int(data, "item_id", min_value=1),
        sale_date=require_date(data, "sale_date"),
        qty=require_int(data, "qty", min_value=1),
        created_by_id=getattr(current_user, "id", None),
    )

    def write():
        db.session.add(sale)
        db.session.commit()
        return [(sale.item_id, sale.sale_date)]

    report = _record(sale.location_id, sale.item_id, write)
    return report_response(report, created=True, sale=sale.to_dict())


@sales_bp.route("/<int:sale_id>", methods=["PATCH"])
@role_required(*WRITE_ROLES)
def update_sale(sale_id):
    sale = db.get_or_404(SaleEvent, sale_id)
    data = payload()
    qty = optional_int(data, "qty", min_value=1)
    new_date = optional_date(data, "sale_date")

    def write():
        old_date = sale.sale_date
        if qty is not None:
            sale.qty = qty
        if new_date is not None:
            sale.sale_date = new_date
        db.session.commit()
        return [(sale.item_id, old_date), (sale.item_id, sale.sale_date)]

    report = _record(sale.location_id, sale.item_id, write)
    return report_response(report, sale=sale.to_dict())


@sales_bp.route("/<int:sale_id>", methods=["DELETE"])
@role_required(*WRITE_ROLES)
def delete_sale(sale_id):
    sale = db.get_or_404(SaleEvent, sale_id)
    location_id, item_id, day = sale.location_id, sale.item_id, sale.sale_date

    def write():
        db.session.delete(sale)
        db.session.commit()
        return [(item_id, day)]

    report = _record(location_id, item_id, write)
    return report_response(report, deleted_sale_id=sale_id)
