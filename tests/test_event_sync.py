from datetime import date

import pytest
from sqlalchemy.exc import OperationalError

from app import create_app
from config import Config
from extensions import db
from ledger import store, sync
from models import Item, LedgerEntry, Location, ReceiptEvent, SaleEvent, TransferPermit


class SyncTestConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    SECRET_KEY = "test-secret"
    WTF_CSRF_ENABLED = False


@pytest.fixture()
def app_context():
    app = create_app(SyncTestConfig)
    ctx = app.app_context()
    ctx.push()
    db.drop_all()
    db.create_all()
    yield app
    db.session.remove()
    db.drop_all()
    ctx.pop()


@pytest.fixture()
def stock(app_context):
    location = Location(name="Main Bar")
    whisky = Item(item_code="WH-750", name="Whisky")
    rum = Item(item_code="RM-750", name="Rum")
    db.session.add_all([location, whisky, rum])
    db.session.commit()
    return location.id, whisky.id, rum.id


def _permit(location_id, permit_no, day, lines):
    permit = TransferPermit(permit_no=permit_no, location_id=location_id, permit_date=day)
    for item_id, qty in lines:
        permit.events.append(ReceiptEvent(item_id=item_id, qty=qty))
    db.session.add(permit)
    db.session.commit()
    return permit


def _sale(location_id, item_id, day, qty):
    sale = SaleEvent(location_id=location_id, item_id=item_id, sale_date=day, qty=qty)
    db.session.add(sale)
    db.session.commit()
    return sale


def test_receipt_resync_sums_events_of_the_exact_day(stock):
    location_id, whisky_id, rum_id = stock
    day = date(2024, 1, 3)
    store.upsert(location_id, whisky_id, day, opening_qty=10, receipt_qty=0, sale_qty=0)
    db.session.commit()
    _permit(location_id, "TP-1", day, [(whisky_id, 5), (rum_id, 9)])
    _permit(location_id, "TP-2", day, [(whisky_id, 7)])
    _permit(location_id, "TP-3", date(2024, 1, 4), [(whisky_id, 100)])

    closing = sync.receipts.resync(location_id, whisky_id, day)

    entry = store.get_entry(location_id, whisky_id, day)
    assert entry.receipt_qty == 12
    assert entry.opening_qty == 10
    assert closing == 22


def test_sale_total_does_not_depend_on_mutation_order(stock):
    location_id, whisky_id, _ = stock
    day = date(2024, 1, 3)
    store.upsert(location_id, whisky_id, day, opening_qty=20, receipt_qty=0, sale_qty=0)
    db.session.commit()

    first = _sale(location_id, whisky_id, day, 3)
    second = _sale(location_id, whisky_id, day, 4)
    sync.sales.resync(location_id, whisky_id, day)
    assert store.get_entry(location_id, whisky_id, day).sale_qty == 7

    db.session.delete(second)
    first.qty = 6
    db.session.commit()
    sync.sales.resync(location_id, whisky_id, day)
    assert store.get_entry(location_id, whisky_id, day).sale_qty == 6

    # resyncing again without changes leaves the cell as it is
    sync.sales.resync(location_id, whisky_id, day)
    entry = store.get_entry(location_id, whisky_id, day)
    assert entry.sale_qty == 6
    assert entry.closing_qty == 14


def test_resync_creates_missing_cell_from_previous_closing(stock):
    location_id, whisky_id, _ = stock
    store.upsert(location_id, whisky_id, date(2024, 1, 1), opening_qty=10, receipt_qty=5, sale_qty=3)
    db.session.commit()
    _sale(location_id, whisky_id, date(2024, 1, 2), 2)
    _permit(location_id, "TP-1", date(2024, 1, 2), [(whisky_id, 4)])

    sync.sales.resync(location_id, whisky_id, date(2024, 1, 2))

    entry = store.get_entry(location_id, whisky_id, date(2024, 1, 2))
    assert (entry.opening_qty, entry.receipt_qty, entry.sale_qty, entry.closing_qty) == (12, 4, 2, 14)


def test_resync_never_touches_later_days(stock):
    location_id, whisky_id, _ = stock
    store.upsert(location_id, whisky_id, date(2024, 1, 1), opening_qty=10, receipt_qty=0, sale_qty=0)
    store.upsert(location_id, whisky_id, date(2024, 1, 2), opening_qty=10, receipt_qty=0, sale_qty=0)
    db.session.commit()
    _sale(location_id, whisky_id, date(2024, 1, 1), 4)

    assert sync.sales.resync(location_id, whisky_id, date(2024, 1, 1)) == 6

    later = store.get_entry(location_id, whisky_id, date(2024, 1, 2))
    assert later.opening_qty == 10


def test_failed_resync_rolls_back_and_reraises(stock, monkeypatch):
    location_id, whisky_id, _ = stock
    day = date(2024, 1, 1)
    store.upsert(location_id, whisky_id, day, opening_qty=10, receipt_qty=0, sale_qty=0)
    db.session.commit()
    _sale(location_id, whisky_id, day, 4)

    def broken_upsert(*args, **kwargs):
        raise OperationalError("UPDATE ledger_entries", {}, Exception("database is locked"))

    monkeypatch.setattr(store, "upsert", broken_upsert)

    with pytest.raises(OperationalError):
        sync.sales.resync(location_id, whisky_id, day)

    assert LedgerEntry.query.one().sale_qty == 0


def test_totals_between_and_items_with_events(stock):
    location_id, whisky_id, rum_id = stock
    _permit(location_id, "TP-1", date(2024, 1, 1), [(whisky_id, 5)])
    _permit(location_id, "TP-2", date(2024, 1, 3), [(whisky_id, 2)])
    _sale(location_id, rum_id, date(2024, 1, 3), 1)

    totals = sync.receipts.totals_between(location_id, whisky_id, date(2024, 1, 1), date(2024, 1, 3))

    assert totals == {date(2024, 1, 1): 5, date(2024, 1, 3): 2}
    assert sync.item_ids_with_events(location_id, date(2024, 1, 3)) == {whisky_id, rum_id}
    assert sync.item_ids_with_events(location_id, date(2024, 1, 2)) == set()
    assert sync.seed_values(location_id, whisky_id, date(2024, 1, 3)) == {
        "opening_qty": 0,
        "receipt_qty": 2,
        "sale_qty": 0,
    }
