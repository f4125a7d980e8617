# blueprints/ledger/__init__.py

from flask import Blueprint

ledger_bp = Blueprint("ledger", __name__)

from . import routes  # noqa
