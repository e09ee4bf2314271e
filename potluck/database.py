"""Database helpers for Potluck."""

from __future__ import annotations

import logging
from collections.abc import Callable
from contextlib import contextmanager

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, scoped_session, sessionmaker

from .config import settings

logger = logging.getLogger("uvicorn.error")

DATABASE_URL = f"sqlite:///{settings.database_path}"
engine = create_engine(
    DATABASE_URL,
    connect_args={"check_same_thread": False},
    future=True,
)
SessionLocal = scoped_session(
    sessionmaker(
        bind=engine,
        autoflush=False,
        autocommit=False,
        future=True,
        expire_on_commit=False,
    )
)


@event.listens_for(Engine, "connect")
def _enable_sqlite_foreign_keys(dbapi_connection, connection_record) -> None:
    """Turn on FK enforcement so RSVP rows cascade with their event."""
    module = type(dbapi_connection).__module__
    if not module.startswith(("sqlite3", "pysqlite")):
        return
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def on_commit(session: Session, action: Callable[[], object]) -> None:
    """Run ``action`` once the session's current transaction commits.

    The action is discarded if the transaction rolls back instead.
    """
    session.info.setdefault("on_commit", []).append(action)


def on_rollback(session: Session, action: Callable[[], object]) -> None:
    """Run ``action`` if the session's current transaction ends without a commit."""
    session.info.setdefault("on_rollback", []).append(action)


def _run_actions(actions: list[Callable[[], object]], when: str) -> None:
    for action in actions:
        try:
            action()
        except OSError as exc:
            logger.warning("Post-%s file action failed: %s", when, exc)


@event.listens_for(Session, "after_commit")
def _after_commit(session: Session) -> None:
    session.info.pop("on_rollback", None)
    _run_actions(session.info.pop("on_commit", []), "commit")


@event.listens_for(Session, "after_transaction_end")
def _after_transaction_end(session: Session, transaction) -> None:
    # Commit already drained both queues; anything left means no commit.
    if transaction.parent is not None:
        return
    session.info.pop("on_commit", None)
    _run_actions(session.info.pop("on_rollback", []), "rollback")


@contextmanager
def get_session():
    """Context manager returning a SQLAlchemy session."""
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def get_db():
    """FastAPI dependency yielding a request-scoped session."""
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
