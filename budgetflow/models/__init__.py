"""
School Budget Workflow
SQLAlchemy models package.

All model modules import ``db`` from here; ``create_app`` imports every
module so that ``db.create_all()`` and Alembic see the full metadata.
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
