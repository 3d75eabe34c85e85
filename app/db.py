import logging
from contextlib import contextmanager
from collections.abc import Iterator

from sqlalchemy import create_engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from app.config import settings
from app.services.errors import InternalError

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    pass


def get_engine():
    return create_engine(
        settings.database_url,
        pool_pre_ping=True,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        pool_timeout=settings.db_pool_timeout,
        pool_recycle=settings.db_pool_recycle,
    )


SessionLocal = sessionmaker(bind=get_engine(), autoflush=False, autocommit=False)


def get_db():
    """Centralized database session dependency for FastAPI.

    Yields a database session and ensures it is closed after the request.
    Use this as a dependency in FastAPI route handlers.

    Example:
        @app.get("/items")
        def get_items(db: Session = Depends(get_db)):
            return db.query(Item).all()
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def unit_of_work(db: Session) -> Iterator[Session]:
    """Run a multi-step mutation and commit only if every step succeeds.

    Any exception rolls the session back. Database errors are re-raised as
    ``InternalError`` so callers can treat them as retryable.

    Example:
        with unit_of_work(db) as tx:
            tx.add(payment)
            subscription.status = SubscriptionStatus.active
    """
    try:
        yield db
        db.commit()
    except SQLAlchemyError as exc:
        logger.exception("Unit of work failed, rolling back")
        db.rollback()
        raise InternalError("Database write failed") from exc
    except Exception:
        db.rollback()
        raise


def end_read(db: Session) -> None:
    """Close a transaction that only read, dropping ``SELECT ... FOR UPDATE`` row locks.

    Called when a locked section exits without committing.
    """
    if db.in_transaction():
        db.rollback()
