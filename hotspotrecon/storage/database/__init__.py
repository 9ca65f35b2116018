"""Database engine, declarative base and session factory."""

from .base import Base, get_session, init_db, utcnow

__all__ = ["Base", "get_session", "init_db", "utcnow"]
