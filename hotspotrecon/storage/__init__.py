"""Persistence layer (SQLAlchemy)."""
