"""Database session context manager.

Usage:
    with db_session() as db:
        ledger = ReconciliationLedger(db)
        ledger.approve(provider_id, system_id, operator="alice")

Units of work inside the block commit themselves; the context manager only
guarantees rollback on error and that the session is always closed.
"""

from collections.abc import Generator
from contextlib import contextmanager

from sqlalchemy.orm import Session

from hotspotrecon.utils.logging import get_logger

logger = get_logger(__name__)


@contextmanager
def db_session() -> Generator[Session, None, None]:
    """Yield a session, rolling back on exception and closing on exit.

    Raises:
        RuntimeError: If the database has not been initialized
    """
    from hotspotrecon.storage.database import base

    if base.SessionLocal is None:
        raise RuntimeError(
            "Database not initialized. Call init_db() first or configure DATABASE_URL."
        )

    db = base.get_session()
    try:
        logger.debug("db_session_created", session_id=id(db))
        yield db
    except Exception as e:
        logger.error(
            "db_session_error_rollback",
            error=str(e),
            error_type=type(e).__name__,
            session_id=id(db),
        )
        db.rollback()
        raise
    finally:
        logger.debug("db_session_closed", session_id=id(db))
        db.close()


@contextmanager
def unit_of_work(session: Session) -> Generator[Session, None, None]:
    """Commit once if the block succeeds, roll back everything if it raises.

    Usage:
        with unit_of_work(self.session):
            self.transactions.compare_and_swap(...)
            self.commissions.add(record)
    """
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
