"""
Flask-Migrate / Alembic entry point.

Usage:
    flask --app wsgi db upgrade
    flask --app wsgi smokey-reassess
    gunicorn wsgi:app
"""

from smokey import create_app

app = create_app()
