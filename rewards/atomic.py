# rewards/atomic.py
import logging
import time
from typing import Callable, TypeVar

from flask import current_app
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from extensions import db
from rewards.errors import OperationResult, RetryExhaustedError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Lock timeouts, serialization failures and deadlocks surface as OperationalError
RETRYABLE_ERRORS = (OperationalError, StaleDataError)
RETRY_BACKOFF_SECONDS = 0.05


def run_atomic(operation: Callable[[], T], name: str = None, attempts: int = None) -> T:
    """
    Run ``operation`` as one database transaction.

    The operation reads (taking row locks where it needs them) and writes through
    ``db.session``. A returned ``OperationResult`` that is not ok rolls the
    transaction back; anything else commits. Conflicting writers are retried up to
    ``TX_RETRY_ATTEMPTS`` times, after which a ``RetryExhaustedError`` is raised.
    Other exceptions roll back and propagate unchanged.
    """
    label = name or getattr(operation, "__name__", "operation")
    if attempts is None:
        attempts = current_app.config.get("TX_RETRY_ATTEMPTS", 3)

    last_error = None
    for attempt in range(1, attempts + 1):
        try:
            result = operation()
            if isinstance(result, OperationResult) and not result.ok:
                db.session.rollback()
            else:
                db.session.commit()
            return result
        except RETRYABLE_ERRORS as e:
            db.session.rollback()
            last_error = e
            logger.warning(f"{label}: conflicting write on attempt {attempt}/{attempts}: {e}")
            if attempt < attempts:
                time.sleep(RETRY_BACKOFF_SECONDS * attempt)
        except Exception:
            db.session.rollback()
            raise

    logger.error(f"{label}: giving up after {attempts} attempts: {last_error}")
    raise RetryExhaustedError(f"{label} failed after {attempts} attempts", cause=last_error)
