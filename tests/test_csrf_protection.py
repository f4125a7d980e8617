import unittest

from app import create_app
from config import Config
from extensions import db
from models import User


class CsrfTestConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    SECRET_KEY = "test-secret"
    WTF_CSRF_ENABLED = True


class CsrfProtectionTestCase(unittest.TestCase):
    def setUp(self):
        self.app = create_app(CsrfTestConfig)
        self.app_context = self.app.app_context()
        self.app_context.push()
        db.drop_all()
        db.create_all()
        self.client = self.app.test_client()

        self.user = User(full_name="Test User", email="user@example.com")
        self.user.set_password("password")
        db.session.add(self.user)
        db.session.commit()

    def tearDown(self):
        db.session.remove()
        db.drop_all()
        self.app_context.pop()

    def _fetch_csrf_token(self) -> str:
        response = self.client.get("/auth/csrf-token")
        self.assertEqual(response.status_code, 200)
        token = response.get_json().get("csrf_token")
        self.assertTrue(token, "CSRF token endpoint should return a token")
        return token

    def test_login_without_csrf_token_is_rejected(self):
        response = self.client.post(
            "/auth/login",
            json={"email": self.user.email, "password": "password"},
        )
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.get_json()["error"], "bad_request")

    def test_login_with_csrf_token_succeeds(self):
        csrf_token = self._fetch_csrf_token()
        response = self.client.post(
            "/auth/login",
            json={"email": self.user.email, "password": "password"},
            headers={"X-CSRFToken": csrf_token},
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.get_json()["id"], self.user.id)

    def test_wrong_password_is_rejected(self):
        csrf_token = self._fetch_csrf_token()
        response = self.client.post(
            "/auth/login",
            json={"email": self.user.email, "password": "nope"},
            headers={"X-CSRFToken": csrf_token},
        )
        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.get_json()["error"], "invalid_credentials")


if __name__ == "__main__":
    unittest.main()
