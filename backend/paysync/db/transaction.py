"""Transaction runner with conflict retry.

Every write on the reconciliation path goes through ``run_in_transaction``.
The ``work`` callable is re-run from scratch on each attempt, so any guard it
evaluates (for example "has this reference been processed?") is re-evaluated
against the state another transaction may have just committed.
"""
import logging
import time
from typing import Callable, TypeVar

from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session, sessionmaker

from paysync.core.exceptions import TransactionAbortedError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# IntegrityError: a competing transaction inserted the same primary key first.
# OperationalError: serialization failure, deadlock, lock timeout, "database is locked".
RETRYABLE_ERRORS = (IntegrityError, OperationalError)


def run_in_transaction(
    session_factory: sessionmaker,
    work: Callable[[Session], T],
    *,
    max_attempts: int = 5,
    backoff_seconds: float = 0.05,
    label: str = "transaction"
) -> T:
    """Run ``work(session)`` and commit, retrying on write conflicts.

    ``work`` must not commit itself and must return plain values (not ORM
    instances), since the session is closed before the result is returned.

    Raises:
        TransactionAbortedError: every attempt hit a retryable conflict
    """
    last_error = None
    for attempt in range(1, max_attempts + 1):
        db = session_factory()
        try:
            result = work(db)
            db.commit()
            return result
        except RETRYABLE_ERRORS as e:
            db.rollback()
            last_error = e
            logger.warning(
                f"{label}: conflict on attempt {attempt}/{max_attempts}: {type(e).__name__}: {e.orig if hasattr(e, 'orig') else e}"
            )
            if attempt < max_attempts:
                time.sleep(backoff_seconds * attempt)
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    raise TransactionAbortedError(
        f"{label} aborted after {max_attempts} conflicting attempts",
        attempts=max_attempts
    ) from last_error
