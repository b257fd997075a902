"""
Smokey Planning Engine
Shared SQLAlchemy handle.

All model modules import ``db`` from here so that a single metadata
object backs ``db.create_all()`` and the Alembic migrations.
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
