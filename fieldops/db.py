from __future__ import annotations

import logging
from collections.abc import Generator

from sqlalchemy import create_engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from fieldops.errors import ApiError, PersistenceError
from fieldops.settings import get_settings

logger = logging.getLogger("fieldops.db")

settings = get_settings()

engine = create_engine(
    settings.database_url,
    pool_pre_ping=True,
    connect_args={"check_same_thread": False} if settings.database_url.startswith("sqlite") else {},
)

SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


class Base(DeclarativeBase):
    pass


def get_db() -> Generator[Session, None, None]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def commit_or_raise(db: Session, *, on_integrity_error: ApiError | None = None) -> None:
    """Commit the unit of work; integrity violations map to ``on_integrity_error`` when given."""
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        if on_integrity_error is not None:
            raise on_integrity_error from exc
        logger.exception("db_integrity_error")
        raise PersistenceError() from exc
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception("db_commit_failed")
        raise PersistenceError() from exc


def flush_or_raise(db: Session, *, on_integrity_error: ApiError | None = None) -> None:
    try:
        db.flush()
    except IntegrityError as exc:
        db.rollback()
        if on_integrity_error is not None:
            raise on_integrity_error from exc
        logger.exception("db_integrity_error")
        raise PersistenceError() from exc
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception("db_flush_failed")
        raise PersistenceError() from exc
