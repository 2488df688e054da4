"""
SQLAlchemy declarative base for the local buffering queue models.

This module contains only the Base declarative base and must not import
from models to avoid circular dependencies.
"""

from sqlalchemy.orm import declarative_base

# Single source of truth for all SQLAlchemy models
Base = declarative_base()
