"""
Procurement Plan Lifecycle Engine
SQLAlchemy model package.

All models share the single ``db`` instance created here; the application
factory binds it with ``db.init_app(app)``.
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
