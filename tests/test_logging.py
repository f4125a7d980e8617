import json
import logging
import unittest
from datetime import date

from app import create_app
from config import Config
from extensions import db
from logging_config import JsonFormatter


class LoggingTestConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    SECRET_KEY = "test-secret"
    WTF_CSRF_ENABLED = False


class LoggingIntegrationTestCase(unittest.TestCase):
    def setUp(self):
        self.app = create_app(LoggingTestConfig)
        self.app_context = self.app.app_context()
        self.app_context.push()
        db.drop_all()
        db.create_all()
        self.client = self.app.test_client()

    def tearDown(self):
        db.session.remove()
        db.drop_all()
        self.app_context.pop()

    def test_request_id_header_and_logging(self):
        with self.assertLogs(self.app.logger.name, level="INFO") as captured:
            response = self.client.get("/auth/csrf-token")

        self.assertEqual(response.status_code, 200)
        request_id = response.headers.get("X-Request-ID")
        self.assertTrue(request_id, "Response should include X-Request-ID header")

        logged_request_ids = [
            getattr(record, "request_id", None)
            for record in captured.records
            if record.getMessage() == "request completed"
        ]

        self.assertIn(
            request_id,
            logged_request_ids,
            "Request log entry should include the generated request ID",
        )

    def test_incoming_request_id_is_echoed_on_errors(self):
        response = self.client.get("/ledger/runs/1", headers={"X-Request-ID": "abc-123"})

        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.headers.get("X-Request-ID"), "abc-123")


class JsonFormatterTestCase(unittest.TestCase):
    def test_extra_fields_and_dates_are_serialized(self):
        record = logging.LogRecord(
            name="ledger.propagation",
            level=logging.WARNING,
            pathname=__file__,
            lineno=1,
            msg="Ledger propagation interrupted",
            args=(),
            exc_info=None,
        )
        record.location_id = 3
        record.resume_from = date(2024, 2, 1)

        payload = json.loads(JsonFormatter().format(record))

        self.assertEqual(payload["level"], "WARNING")
        self.assertEqual(payload["logger"], "ledger.propagation")
        self.assertEqual(payload["location_id"], 3)
        self.assertEqual(payload["resume_from"], "2024-02-01")
        self.assertNotIn("msg", payload)


if __name__ == "__main__":
    unittest.main()
