import unittest

from app import create_app
from config import Config
from extensions import db
from models import DEFAULT_ROLES, Role, ensure_roles


class TestConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    SECRET_KEY = "test-secret"
    WTF_CSRF_ENABLED = False


class EnsureRolesTestCase(unittest.TestCase):
    def setUp(self):
        self.app = create_app(TestConfig)
        self.app_context = self.app.app_context()
        self.app_context.push()
        db.drop_all()
        db.create_all()

    def tearDown(self):
        db.session.remove()
        db.drop_all()
        self.app_context.pop()

    def test_ensure_roles_creates_ledger_roles_when_missing(self):
        self.assertEqual(Role.query.count(), 0)

        ensure_roles()

        role_names = {role.name for role in Role.query.all()}
        self.assertEqual(role_names, set(DEFAULT_ROLES))
        self.assertIn("auditor", role_names)

        # A second call should be idempotent and not create duplicates
        ensure_roles()
        self.assertEqual(Role.query.count(), len(DEFAULT_ROLES))


if __name__ == "__main__":
    unittest.main()
