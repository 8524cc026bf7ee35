from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine, event
from sqlalchemy import exc as sa_exc
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from config import get_settings
from errors import IntegrityError, TransientStoreError

LOCK_MESSAGES = ("database is locked", "database is busy", "database table is locked")


def make_engine(database_url: str, **kwargs) -> Engine:
    connect_args: dict[str, object] = {}
    if database_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    eng = create_engine(database_url, connect_args=connect_args, **kwargs)
    if database_url.startswith("sqlite"):
        event.listen(eng, "connect", _enable_sqlite_pragmas)
    return eng


def _enable_sqlite_pragmas(dbapi_conn, _record):
    busy_timeout_ms = get_settings().busy_timeout_ms
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL;")
    cursor.execute("PRAGMA foreign_keys=ON;")
    cursor.execute(f"PRAGMA busy_timeout={int(busy_timeout_ms)};")
    cursor.close()


engine = make_engine(get_settings().database_url)
SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


class Base(DeclarativeBase):
    pass


def is_lock_error(exc: BaseException) -> bool:
    message = str(getattr(exc, "orig", exc)).lower()
    return any(fragment in message for fragment in LOCK_MESSAGES)


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
    """Run a unit of work that either commits entirely or leaves no trace.

    Store errors are translated after rollback: constraint violations become
    ``IntegrityError`` and lock contention becomes ``TransientStoreError``.
    Nothing is retried here.
    """
    try:
        yield session
        session.commit()
    except sa_exc.IntegrityError as exc:
        session.rollback()
        raise IntegrityError(str(exc.orig)) from exc
    except sa_exc.OperationalError as exc:
        session.rollback()
        if is_lock_error(exc):
            raise TransientStoreError(str(exc.orig)) from exc
        raise
    except Exception:
        session.rollback()
        raise
