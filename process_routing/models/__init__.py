"""
MES Process Routing
Shared SQLAlchemy instance.

Usage:
    from process_routing.models import db
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
