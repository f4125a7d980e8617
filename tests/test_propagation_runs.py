import unittest
from datetime import date

from sqlalchemy.exc import OperationalError

from app import create_app
from config import Config
from extensions import db
from ledger import service, store
from ledger.errors import InvalidRequest, PropagationBusy, PropagationInterrupted, RunNotFound
from ledger.locks import key_lock
from models import (
    RUN_STATUS_CANCELLED,
    RUN_STATUS_COMPLETE,
    RUN_STATUS_INTERRUPTED,
    RUN_STATUS_RUNNING,
    RUN_TRIGGER_MANUAL,
    Item,
    LedgerEntry,
    Location,
    PropagationRun,
    ReceiptEvent,
    SaleEvent,
    TransferPermit,
)

TODAY = date(2024, 1, 5)


class RunsTestConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    SECRET_KEY = "test-secret"
    WTF_CSRF_ENABLED = False
    LEDGER_BATCH_SIZE = 2
    LEDGER_LOCK_TIMEOUT = 0.05


class PropagationRunTestCase(unittest.TestCase):
    def setUp(self):
        self.app = create_app(RunsTestConfig)
        self.app_context = self.app.app_context()
        self.app_context.push()
        db.drop_all()
        db.create_all()

        self.location = Location(name="Main Bar")
        self.whisky = Item(item_code="WH-750", name="Whisky")
        self.rum = Item(item_code="RM-750", name="Rum")
        db.session.add_all([self.location, self.whisky, self.rum])
        db.session.commit()
        self.location_id = self.location.id
        self.whisky_id = self.whisky.id
        self.rum_id = self.rum.id

        for item_id in (self.whisky_id, self.rum_id):
            for day in range(1, 6):
                store.upsert(self.location_id, item_id, date(2024, 1, day), opening_qty=10, receipt_qty=0, sale_qty=0)
        db.session.commit()

    def tearDown(self):
        db.session.remove()
        db.drop_all()
        self.app_context.pop()

    def _closings(self, item_id):
        return [
            entry.closing_qty
            for entry in store.entries_between(self.location_id, item_id, date(2024, 1, 1), TODAY)
        ]

    def _fail_once_on(self, item_id, day):
        real_upsert = store.upsert
        failures = []

        def flaky_upsert(location_id, row_item_id, row_day, **values):
            if row_item_id == item_id and row_day == day and not failures:
                failures.append(row_day)
                raise OperationalError("UPDATE ledger_entries", {}, Exception("connection reset"))
            return real_upsert(location_id, row_item_id, row_day, **values)

        store.upsert = flaky_upsert
        self.addCleanup(setattr, store, "upsert", real_upsert)

    def test_edit_opening_records_a_complete_run(self):
        run = service.edit_opening(self.location_id, self.whisky_id, date(2024, 1, 2), 15, today=TODAY)

        self.assertEqual(run.status, RUN_STATUS_COMPLETE)
        self.assertEqual(run.trigger, "opening_edit")
        self.assertEqual((run.days_done, run.days_total), (3, 3))
        self.assertEqual(run.progress_message, "updated 3 of 3 days")
        self.assertIsNone(run.resume_from)
        self.assertEqual(self._closings(self.whisky_id), [10, 15, 15, 15, 15])
        self.assertEqual(self._closings(self.rum_id), [10, 10, 10, 10, 10])

    def test_edit_opening_on_missing_day_seeds_event_totals(self):
        db.session.add(
            SaleEvent(location_id=self.location_id, item_id=self.whisky_id, sale_date=date(2024, 1, 6), qty=2)
        )
        db.session.commit()

        run = service.edit_opening(self.location_id, self.whisky_id, date(2024, 1, 6), 30, today=date(2024, 1, 6))

        entry = store.get_entry(self.location_id, self.whisky_id, date(2024, 1, 6))
        self.assertEqual((entry.opening_qty, entry.sale_qty, entry.closing_qty), (30, 2, 28))
        self.assertEqual(run.days_total, 0)
        self.assertTrue(run.fully_consistent)

    def test_edit_opening_rejects_non_integer_values(self):
        with self.assertRaises(InvalidRequest):
            service.edit_opening(self.location_id, self.whisky_id, date(2024, 1, 2), "ten", today=TODAY)

        self.assertEqual(PropagationRun.query.count(), 0)

    def test_batch_budget_stops_run_and_resume_finishes_it(self):
        run = service.edit_opening(
            self.location_id, self.whisky_id, date(2024, 1, 1), 20, today=TODAY, max_batches=1
        )

        self.assertEqual(run.status, RUN_STATUS_CANCELLED)
        self.assertFalse(run.fully_consistent)
        self.assertEqual(run.last_committed_day, date(2024, 1, 3))
        self.assertEqual(run.resume_from, date(2024, 1, 4))
        self.assertEqual((run.days_done, run.days_total), (2, 4))
        self.assertIn("resume", run.error)
        self.assertEqual(self._closings(self.whisky_id), [20, 20, 20, 10, 10])

        resumed = service.resume_run(run.id, today=TODAY, max_batches=0)

        self.assertEqual(resumed.id, run.id)
        self.assertEqual(resumed.status, RUN_STATUS_COMPLETE)
        self.assertEqual((resumed.days_done, resumed.days_total), (4, 4))
        self.assertIsNone(resumed.error)
        self.assertEqual(self._closings(self.whisky_id), [20, 20, 20, 20, 20])
        self.assertEqual(service.verify(self.location_id, None, date(2024, 1, 1), TODAY), [])

    def test_interrupted_run_is_persisted_and_resumable(self):
        self._fail_once_on(self.whisky_id, date(2024, 1, 4))

        with self.assertRaises(PropagationInterrupted) as ctx:
            service.edit_opening(self.location_id, self.whisky_id, date(2024, 1, 1), 20, today=TODAY)

        run = ctx.exception.run
        self.assertIsNotNone(run)
        self.assertEqual(ctx.exception.details["run_id"], run.id)
        stored = service.get_run(run.id)
        self.assertEqual(stored.status, RUN_STATUS_INTERRUPTED)
        self.assertEqual(stored.resume_from, date(2024, 1, 4))
        self.assertIn("OperationalError", stored.error)

        resumed = service.resume_run(run.id, today=TODAY)

        self.assertEqual(resumed.status, RUN_STATUS_COMPLETE)
        self.assertEqual(self._closings(self.whisky_id), [20, 20, 20, 20, 20])

    def test_cancelled_run_without_progress_restarts_from_its_start(self):
        run = PropagationRun(
            location_id=self.location_id,
            item_id=self.whisky_id,
            trigger=RUN_TRIGGER_MANUAL,
            start_day=date(2024, 1, 3),
            target_day=TODAY,
            days_total=2,
            status=RUN_STATUS_RUNNING,
        )
        db.session.add(run)
        db.session.commit()
        store.upsert(self.location_id, self.whisky_id, date(2024, 1, 3), opening_qty=4, receipt_qty=0, sale_qty=0)
        db.session.commit()

        cancelled = service.cancel_run(run.id)
        self.assertEqual(cancelled.status, RUN_STATUS_CANCELLED)

        resumed = service.resume_run(run.id, today=TODAY)

        self.assertEqual(resumed.status, RUN_STATUS_COMPLETE)
        self.assertEqual(self._closings(self.whisky_id), [10, 10, 4, 4, 4])

    def test_resume_of_complete_run_is_a_noop(self):
        run = service.edit_opening(self.location_id, self.whisky_id, date(2024, 1, 4), 7, today=TODAY)
        updated_at = run.updated_at

        again = service.resume_run(run.id, today=TODAY)

        self.assertEqual(again.status, RUN_STATUS_COMPLETE)
        self.assertEqual(again.updated_at, updated_at)
        self.assertEqual(service.cancel_run(run.id).status, RUN_STATUS_COMPLETE)

    def test_unknown_run_raises_run_not_found(self):
        with self.assertRaises(RunNotFound) as ctx:
            service.get_run(404)

        self.assertEqual(ctx.exception.status_code, 404)

    def test_sale_pipeline_resyncs_then_cascades(self):
        db.session.add(
            SaleEvent(location_id=self.location_id, item_id=self.whisky_id, sale_date=date(2024, 1, 2), qty=4)
        )
        db.session.commit()

        run = service.sale_changed(self.location_id, self.whisky_id, date(2024, 1, 2), today=TODAY)

        self.assertEqual(run.trigger, "sale")
        self.assertEqual(run.start_day, date(2024, 1, 2))
        self.assertEqual(self._closings(self.whisky_id), [10, 6, 6, 6, 6])

    def test_notify_events_runs_one_cascade_per_item_from_earliest_day(self):
        permit_late = TransferPermit(permit_no="TP-1", location_id=self.location_id, permit_date=date(2024, 1, 4))
        permit_late.events.append(ReceiptEvent(item_id=self.whisky_id, qty=3))
        permit_early = TransferPermit(permit_no="TP-2", location_id=self.location_id, permit_date=date(2024, 1, 2))
        permit_early.events.append(ReceiptEvent(item_id=self.whisky_id, qty=5))
        permit_early.events.append(ReceiptEvent(item_id=self.rum_id, qty=1))
        db.session.add_all([permit_late, permit_early])
        db.session.commit()

        report = service.notify_events(
            "receipt",
            self.location_id,
            [
                (self.whisky_id, date(2024, 1, 4)),
                (self.whisky_id, date(2024, 1, 2)),
                (self.rum_id, date(2024, 1, 2)),
            ],
            today=TODAY,
        )
        runs = report.runs

        self.assertEqual([(run.item_id, run.start_day) for run in runs], [
            (self.whisky_id, date(2024, 1, 2)),
            (self.rum_id, date(2024, 1, 2)),
        ])
        self.assertTrue(all(run.fully_consistent for run in runs))
        self.assertTrue(report.fully_consistent)
        self.assertEqual(self._closings(self.whisky_id), [10, 15, 15, 18, 18])
        self.assertEqual(self._closings(self.rum_id), [10, 11, 11, 11, 11])

    def test_notify_events_keeps_going_after_an_interrupted_item(self):
        for item_id in (self.whisky_id, self.rum_id):
            db.session.add(
                SaleEvent(location_id=self.location_id, item_id=item_id, sale_date=date(2024, 1, 1), qty=1)
            )
        db.session.commit()
        self._fail_once_on(self.whisky_id, date(2024, 1, 3))

        report = service.notify_events(
            "sale",
            self.location_id,
            [(self.whisky_id, date(2024, 1, 1)), (self.rum_id, date(2024, 1, 1))],
            today=TODAY,
        )
        runs = report.runs

        self.assertEqual([run.status for run in runs], [RUN_STATUS_INTERRUPTED, RUN_STATUS_COMPLETE])
        self.assertEqual(runs[0].resume_from, date(2024, 1, 2))
        self.assertEqual(self._closings(self.rum_id), [9, 9, 9, 9, 9])

    def test_notify_events_lists_items_that_could_not_be_resynced(self):
        for item_id in (self.whisky_id, self.rum_id):
            db.session.add(
                SaleEvent(location_id=self.location_id, item_id=item_id, sale_date=date(2024, 1, 2), qty=3)
            )
        db.session.commit()

        with key_lock(self.location_id, self.whisky_id):
            report = service.notify_events(
                "sale",
                self.location_id,
                [(self.whisky_id, date(2024, 1, 2)), (self.rum_id, date(2024, 1, 2))],
                today=TODAY,
            )

        self.assertFalse(report.fully_consistent)
        self.assertEqual([run.item_id for run in report.runs], [self.rum_id])
        self.assertEqual(
            [item.to_dict()["error"] for item in report.unsynced], ["propagation_busy"]
        )
        self.assertEqual(report.unsynced[0].days, [date(2024, 1, 2)])
        self.assertEqual(self._closings(self.whisky_id), [10, 10, 10, 10, 10])
        self.assertEqual(self._closings(self.rum_id), [10, 7, 7, 7, 7])

    def test_event_change_on_busy_item_is_not_written(self):
        written = []

        def write():
            written.append(True)
            return [(self.whisky_id, date(2024, 1, 2))]

        with key_lock(self.location_id, self.whisky_id):
            with self.assertRaises(PropagationBusy):
                service.record_event_change(
                    "sale", self.location_id, [self.rum_id, self.whisky_id], write, today=TODAY
                )

        self.assertEqual(written, [])
        self.assertEqual(PropagationRun.query.count(), 0)

    def test_event_change_is_written_and_synced_under_the_item_lock(self):
        def write():
            db.session.add(
                SaleEvent(location_id=self.location_id, item_id=self.whisky_id, sale_date=date(2024, 1, 3), qty=4)
            )
            db.session.commit()
            return [(self.whisky_id, date(2024, 1, 3))]

        report = service.record_event_change("sale", self.location_id, [self.whisky_id], write, today=TODAY)

        self.assertTrue(report.fully_consistent)
        self.assertEqual(report.unsynced, [])
        self.assertEqual(self._closings(self.whisky_id), [10, 10, 6, 6, 6])

    def test_resync_item_recounts_totals_and_cascades(self):
        # events written behind the ledger's back
        db.session.add(
            SaleEvent(location_id=self.location_id, item_id=self.whisky_id, sale_date=date(2024, 1, 2), qty=2)
        )
        permit = TransferPermit(permit_no="TP-9", location_id=self.location_id, permit_date=date(2024, 1, 4))
        permit.events.append(ReceiptEvent(item_id=self.whisky_id, qty=5))
        db.session.add(permit)
        db.session.commit()
        drift = service.verify(self.location_id, self.whisky_id, date(2024, 1, 1), TODAY)

        run = service.resync_item(self.location_id, self.whisky_id, date(2024, 1, 1), TODAY, today=TODAY)

        self.assertEqual(
            [(v.kind, v.day, v.field) for v in drift],
            [
                ("aggregate_mismatch", date(2024, 1, 2), "sale_qty"),
                ("aggregate_mismatch", date(2024, 1, 4), "receipt_qty"),
            ],
        )
        self.assertEqual(run.trigger, "resync")
        self.assertEqual(run.start_day, date(2024, 1, 1))
        self.assertEqual(run.status, RUN_STATUS_COMPLETE)
        self.assertEqual(self._closings(self.whisky_id), [10, 8, 8, 13, 13])
        self.assertEqual(service.verify(self.location_id, None, date(2024, 1, 1), TODAY), [])

    def test_resync_item_with_nothing_in_range_returns_none(self):
        run = service.resync_item(self.location_id, self.whisky_id, date(2024, 2, 1), today=date(2024, 2, 3))

        self.assertIsNone(run)
        self.assertEqual(PropagationRun.query.count(), 0)

    def test_unknown_event_kind_is_rejected(self):
        with self.assertRaises(InvalidRequest):
            service.notify_events("transfer", self.location_id, [], today=TODAY)

    def test_busy_item_raises_propagation_busy(self):
        with key_lock(self.location_id, self.whisky_id):
            with self.assertRaises(PropagationBusy) as ctx:
                service.edit_opening(self.location_id, self.whisky_id, date(2024, 1, 1), 20, today=TODAY)

        self.assertEqual(ctx.exception.status_code, 423)
        self.assertEqual(self._closings(self.whisky_id), [10, 10, 10, 10, 10])

    def test_reset_location_removes_its_data_only(self):
        other = Location(name="Second Shop")
        db.session.add(other)
        db.session.commit()
        store.upsert(other.id, self.whisky_id, date(2024, 1, 1), opening_qty=1, receipt_qty=0, sale_qty=0)
        permit = TransferPermit(permit_no="TP-1", location_id=self.location_id, permit_date=date(2024, 1, 2))
        permit.events.append(ReceiptEvent(item_id=self.whisky_id, qty=5))
        db.session.add_all(
            [
                permit,
                SaleEvent(location_id=self.location_id, item_id=self.whisky_id, sale_date=date(2024, 1, 2), qty=1),
            ]
        )
        db.session.commit()
        service.edit_opening(self.location_id, self.whisky_id, date(2024, 1, 5), 3, today=TODAY)

        counts = service.reset_location(self.location_id)

        self.assertEqual(
            counts,
            {
                "sale_events": 1,
                "receipt_events": 1,
                "transfer_permits": 1,
                "propagation_runs": 1,
                "ledger_entries": 10,
            },
        )
        self.assertEqual(LedgerEntry.query.count(), 1)
        self.assertEqual(TransferPermit.query.count(), 0)


if __name__ == "__main__":
    unittest.main()
