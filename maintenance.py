import logging
import time
from typing import Callable, Optional, TypeVar

from sqlalchemy import exc as sa_exc
from sqlalchemy.engine import Engine

from config import get_settings
from database import Base, is_lock_error
from errors import TransientStoreError

logger = logging.getLogger(__name__)

T = TypeVar("T")

BACKOFF_FACTOR = 1.6


def run_with_retry(
    operation: Callable[[], T],
    *,
    label: str,
    retries: Optional[int] = None,
    delay_secs: Optional[float] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Run a maintenance statement, retrying only while the store is locked.

    Ledger writes must not go through here: replaying them could apply a
    balance effect twice.
    """
    settings = get_settings()
    retries = settings.index_retry_attempts if retries is None else retries
    delay_secs = settings.index_retry_delay_secs if delay_secs is None else delay_secs

    attempt = 0
    while True:
        try:
            result = operation()
        except (sa_exc.OperationalError, TransientStoreError) as exc:
            if not isinstance(exc, TransientStoreError) and not is_lock_error(exc):
                raise
            logger.warning(
                f"maintenance_retry: label={label} attempt={attempt + 1}/{retries + 1}"
            )
            if attempt >= retries:
                raise TransientStoreError(
                    f"{label} still locked after {retries + 1} attempts"
                ) from exc
            sleep(delay_secs * (BACKOFF_FACTOR**attempt))
            attempt += 1
            continue
        logger.info(f"maintenance_ok: label={label} attempt={attempt + 1}")
        return result


def ensure_indexes(bind: Engine, **retry_options) -> list[str]:
    """Create any index declared on the models that the database lacks."""
    ensured: list[str] = []
    for table in Base.metadata.sorted_tables:
        for index in sorted(table.indexes, key=lambda ix: ix.name or ""):

            def create(index=index) -> None:
                with bind.begin() as conn:
                    index.create(conn, checkfirst=True)

            run_with_retry(create, label=f"index:{index.name}", **retry_options)
            ensured.append(index.name)
    return ensured
