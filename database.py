from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker
from tenacity import (
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from config import get_settings


_LOCK_MARKERS = (
    "database is locked",
    "lock wait timeout",
    "lock timeout",
    "could not obtain lock",
    "deadlock",
)


class StorageError(RuntimeError):
    """A storage-layer failure inside a unit of work; the cause is chained."""


def _create_engine() -> Engine:
    settings = get_settings()
    connect_args: dict[str, object] = {}
    if settings.database_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    from sqlalchemy import create_engine

    eng = create_engine(settings.database_url, connect_args=connect_args)
    if settings.database_url.startswith("sqlite"):
        event.listen(eng, "connect", _enable_sqlite_pragmas)
    return eng


def _enable_sqlite_pragmas(dbapi_conn, _record):
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL;")
    cursor.execute("PRAGMA foreign_keys=ON;")
    cursor.close()


engine = _create_engine()
SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


class Base(DeclarativeBase):
    pass


@contextmanager
def session_scope() -> Iterator[Session]:
    session: Session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


@contextmanager
def atomic(session: Session) -> Iterator[Session]:
    """Run a block as one unit of work on ``session``.

    Commits when the block finishes, rolls back on any exception. Driver and
    ORM failures surface as ``StorageError`` with the original error chained.
    """
    try:
        yield session
        session.commit()
    except SQLAlchemyError as exc:
        session.rollback()
        raise StorageError(f"Storage failure: {exc}") from exc
    except Exception:
        session.rollback()
        raise


def is_lock_timeout(exc: BaseException) -> bool:
    if isinstance(exc, StorageError) and exc.__cause__ is not None:
        exc = exc.__cause__
    if not isinstance(exc, OperationalError):
        return False
    message = str(exc.orig if exc.orig is not None else exc).lower()
    return any(marker in message for marker in _LOCK_MARKERS)


def _lock_retry_policy():
    settings = get_settings()
    return retry(
        stop=stop_after_attempt(settings.lock_retry_attempts),
        wait=wait_exponential(
            multiplier=0.05, min=0.05, max=settings.lock_retry_max_wait_secs
        ),
        retry=retry_if_exception(is_lock_timeout),
        reraise=True,
    )


retry_on_lock = _lock_retry_policy()
