"""
Flask extension instances for Cotiz.

Bound to the app in create_app(); every other module imports them from here.

- db: constraint names follow a fixed convention so Flask-Migrate revisions are
  reproducible across SQLite (development/tests) and PostgreSQL.
- migrate: batch mode, required for ALTER TABLE on SQLite.
- login_manager: session auth for the JSON API (no login view; 401 handled in create_app).
- csrf: enforced for session requests; public and webhook blueprints are exempt.
"""

from flask_login import LoginManager
from flask_migrate import Migrate
from flask_sqlalchemy import SQLAlchemy
from flask_wtf import CSRFProtect
from sqlalchemy import MetaData

NAMING_CONVENTION = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}

db = SQLAlchemy(metadata=MetaData(naming_convention=NAMING_CONVENTION))
migrate = Migrate(render_as_batch=True)
login_manager = LoginManager()
csrf = CSRFProtect()
