"""
EquipTrack: SQLAlchemy models.

``db`` is the shared Flask-SQLAlchemy extension; every model module imports
it from here and ``create_app`` binds it to the application.
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
