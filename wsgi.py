"""
WSGI and Flask-Migrate / Alembic entry point.

Usage:
    flask --app wsgi db upgrade
    flask --app wsgi seed-reference-data
"""

from app import create_app

app = create_app()
