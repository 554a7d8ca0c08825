"""SQLAlchemy extension shared by every model module.

Models import ``db`` from here; ``create_app`` binds it to the app.
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
