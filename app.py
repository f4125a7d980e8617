import logging
import os
import time
import uuid

from flask import Flask, g, request
from werkzeug.exceptions import HTTPException
from werkzeug.middleware.proxy_fix import ProxyFix

from cli import ledger_cli
from config import Config
from extensions import csrf, db, login_manager, migrate
from ledger.errors import LedgerError
from logging_config import setup_logging
from models import User, ensure_roles, ensure_schema
from startup import run_startup_tasks

from blueprints.auth import auth_bp
from blueprints.ledger import ledger_bp
from blueprints.receipts import receipts_bp
from blueprints.sales import sales_bp


def _warn_insecure_defaults(app: Flask) -> None:
    """Emit warnings when sensitive defaults are still in use."""

    secret_key = app.config.get("SECRET_KEY")
    if secret_key == "secret-key-change-me":
        app.logger.warning(
            "SECRET_KEY is using the placeholder value; please set SECRET_KEY "
            "in the environment for production deployments."
        )

    db_uri = app.config.get("SQLALCHEMY_DATABASE_URI", "")
    if db_uri.startswith("sqlite:///") and "DATABASE_URL" not in os.environ:
        app.logger.warning(
            "DATABASE_URL is not set; application is falling back to the local "
            "SQLite database. Configure a production database via DATABASE_URL."
        )


def _is_production_environment() -> bool:
    """Return True when running in a production-like environment."""

    return os.environ.get("APP_ENV") == "production" or os.environ.get("FLASK_ENV") == "production"


def create_app(config_class=Config) -> Flask:
    """Create and configure the stock ledger application."""
    app = Flask(__name__)
    app.config.from_object(config_class)

    setup_logging(app)

    _warn_insecure_defaults(app)

    db.init_app(app)
    migrate.init_app(app, db)
    login_manager.init_app(app)
    csrf.init_app(app)

    with app.app_context():
        if app.config.get("AUTO_SCHEMA_BOOTSTRAP"):
            ensure_schema()
        ensure_roles()
        run_startup_tasks()

    if _is_production_environment():
        app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1)

    @login_manager.user_loader
    def load_user(user_id: str):
        try:
            user_id_int = int(user_id)
        except (TypeError, ValueError):
            return None

        return db.session.get(User, user_id_int)

    @login_manager.unauthorized_handler
    def unauthorized():
        return {"error": "unauthorized", "message": "Login required"}, 401

    def _log_request_summary(status_code: int) -> None:
        request_id = getattr(g, "request_id", None)
        start_time = getattr(g, "request_start_time", None)

        duration_ms = None
        if start_time is not None:
            duration_ms = (time.perf_counter() - start_time) * 1000

        app.logger.info(
            "request completed",
            extra={
                "request_id": request_id,
                "status_code": status_code,
                "duration_ms": int(duration_ms) if duration_ms is not None else None,
            },
        )

    @app.before_request
    def attach_request_context() -> None:
        g.request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        g.request_start_time = time.perf_counter()

    @app.after_request
    def append_request_id(response):
        response.headers["X-Request-ID"] = getattr(g, "request_id", "")
        _log_request_summary(response.status_code)
        return response

    @app.errorhandler(LedgerError)
    def handle_ledger_error(error: LedgerError):
        level = logging.WARNING if error.status_code < 500 else logging.ERROR
        app.logger.log(
            level,
            "Ledger request failed",
            extra={"error_code": error.code, "detail": error.message},
        )
        response = app.make_response((error.to_dict(), error.status_code))
        response.headers["X-Request-ID"] = getattr(g, "request_id", "")
        return response

    @app.errorhandler(Exception)
    def handle_exception(error):
        if isinstance(error, HTTPException):
            body = {"error": error.name.lower().replace(" ", "_"), "message": error.description}
            response = app.make_response((body, error.code))
        else:
            app.logger.exception("Unhandled exception", exc_info=error)
            response = app.make_response(({"error": "internal_error"}, 500))
        response.headers["X-Request-ID"] = getattr(g, "request_id", "")
        return response

    app.register_blueprint(auth_bp, url_prefix="/auth")          # /auth/...
    app.register_blueprint(ledger_bp, url_prefix="/ledger")      # /ledger/...
    app.register_blueprint(receipts_bp, url_prefix="/receipts")  # /receipts/...
    app.register_blueprint(sales_bp, url_prefix="/sales")        # /sales/...

    app.cli.add_command(ledger_cli)

    return app


if __name__ == "__main__":
    app = create_app()
    app.run(
        host=os.environ.get("FLASK_RUN_HOST", "127.0.0.1"),
        debug=app.config.get("DEBUG", False),
    )
