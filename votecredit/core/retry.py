from __future__ import annotations

import logging
import time
from typing import Callable, Optional, TypeVar

from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session

from ..config import get_settings
from .errors import Busy, LedgerError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Contention(Exception):
    """A compare-and-set lost a race; the unit of work should be retried."""


def run_with_retry(
    session: Session,
    operation: Callable[[], T],
    *,
    label: str,
    attempts: Optional[int] = None,
    backoff_seconds: Optional[float] = None,
) -> T:
    """Run ``operation`` as one unit of work, retrying transient contention.

    Business errors roll the session back and propagate unchanged. Lock
    timeouts and lost compare-and-set races are retried a bounded number of
    times and then surface as ``Busy``. Any other storage failure is
    classified as ``Busy`` so raw driver errors never reach callers.
    """
    settings = get_settings()
    max_attempts = attempts or settings.storage_retry_attempts
    backoff = settings.storage_retry_backoff_seconds if backoff_seconds is None else backoff_seconds

    for attempt in range(1, max_attempts + 1):
        try:
            return operation()
        except LedgerError:
            session.rollback()
            raise
        except (OperationalError, Contention) as exc:
            session.rollback()
            logger.warning("%s hit storage contention (attempt %s/%s): %s", label, attempt, max_attempts, exc)
            if attempt < max_attempts and backoff:
                time.sleep(backoff * attempt)
        except SQLAlchemyError:
            session.rollback()
            logger.exception("%s failed with a storage error.", label)
            raise Busy(f"{label} could not be completed; storage unavailable.")
    raise Busy(f"{label} could not be completed after {max_attempts} attempts; retry later.")
