"""
Planbridge: SQLAlchemy model package.

``db`` is the shared Flask-SQLAlchemy handle. Model modules import it from
here; ``create_app`` binds it to the application.
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
