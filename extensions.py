# extensions.py
from flask_login import LoginManager
from flask_migrate import Migrate
from flask_sqlalchemy import SQLAlchemy
from flask_wtf.csrf import CSRFProtect

# Database (ledger rows, receipt/sale events, propagation runs)
db = SQLAlchemy()

# Alembic migrations under migrations/
migrate = Migrate()

# Session login for the JSON endpoints
login_manager = LoginManager()

csrf = CSRFProtect()
