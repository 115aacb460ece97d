"""
BrandForge Stage Engine
Data models.

All model modules share the single ``db`` instance defined here.
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
