"""Expiry sweep: downgrade premium entitlements whose expiry has passed.

Candidates are read in keyset pages ordered by ``(expiry, account_id)`` so a
run never scans the whole table, and each page is downgraded with a single
conditional UPDATE. The cursor lives only for the duration of a run; starting
over is always correct because already-downgraded rows drop out of the filter.
"""
from typing import Dict, List, Optional, Tuple

from opentelemetry import trace
from pydantic import BaseModel, Field
from redis.exceptions import LockError
from sqlalchemy import and_, or_
from sqlalchemy.orm import Session, sessionmaker

from paysync.core.logging import sweep_logger
from paysync.core.metrics import sweep_downgrades_counter, sweep_runs_counter
from paysync.db.redis import sweep_lock
from paysync.db.transaction import run_in_transaction
from paysync.models.entitlement import EXPIRY_FIELDS, PLAN_FREE, PLAN_PREMIUM, Entitlement
from paysync.services.reconciliation import current_millis

tracer = trace.get_tracer(__name__)

DEFAULT_PAGE_SIZE = 300


class SweepResult(BaseModel):
    processed: int = 0
    downgrades: int = 0
    pages: int = 0
    downgrades_by_field: Dict[str, int] = Field(default_factory=dict)
    skipped: bool = False


def _candidate_filter(field: str, now_ms: int) -> list:
    column = getattr(Entitlement, field)
    conditions = [
        Entitlement.plan == PLAN_PREMIUM,
        column.isnot(None),
        column <= now_ms,
    ]
    if field != "expires_at":
        # Legacy locations only count when the canonical expiry is absent
        conditions.append(Entitlement.expires_at.is_(None))
    return conditions


def _sweep_page(db: Session, field: str, now_ms: int, page_size: int,
                cursor: Optional[Tuple[int, str]]) -> Tuple[int, int, Optional[Tuple[int, str]]]:
    column = getattr(Entitlement, field)
    query = db.query(column.label("expiry"), Entitlement.account_id).filter(*_candidate_filter(field, now_ms))
    if cursor is not None:
        last_expiry, last_account = cursor
        query = query.filter(or_(
            column > last_expiry,
            and_(column == last_expiry, Entitlement.account_id > last_account),
        ))
    rows = query.order_by(column, Entitlement.account_id).limit(page_size).all()
    if not rows:
        return 0, 0, None

    account_ids: List[str] = [row.account_id for row in rows]
    # The filter is re-applied so an account extended since the read is left alone
    downgraded = (
        db.query(Entitlement)
        .filter(Entitlement.account_id.in_(account_ids), *_candidate_filter(field, now_ms))
        .update({Entitlement.plan: PLAN_FREE}, synchronize_session=False)
    )
    return len(rows), downgraded, (rows[-1].expiry, rows[-1].account_id)


def sweep_expired_entitlements(session_factory: sessionmaker, *, now_ms: Optional[int] = None,
                               page_size: int = DEFAULT_PAGE_SIZE, max_attempts: int = 5) -> SweepResult:
    """Run every expiry-field pass to completion and return the totals"""
    now = now_ms if now_ms is not None else current_millis()
    result = SweepResult()

    for field in EXPIRY_FIELDS:
        cursor = None
        field_downgrades = 0
        while True:
            read, downgraded, cursor = run_in_transaction(
                session_factory,
                lambda db: _sweep_page(db, field, now, page_size, cursor),
                max_attempts=max_attempts,
                label=f"sweep page {field}",
            )
            if read == 0:
                break
            result.pages += 1
            result.processed += read
            field_downgrades += downgraded
            sweep_logger.info(f"Sweep {field}: page of {read} candidates, {downgraded} downgraded")

        result.downgrades_by_field[field] = field_downgrades
        result.downgrades += field_downgrades

    sweep_logger.info(
        f"Expiry sweep complete: processed={result.processed} downgrades={result.downgrades} "
        f"pages={result.pages}"
    )
    return result


def run_locked_sweep(session_factory: sessionmaker, redis_client, *, page_size: int = DEFAULT_PAGE_SIZE,
                     lock_timeout: int = 900, now_ms: Optional[int] = None) -> SweepResult:
    """Run the sweep under the Redis run lock; returns ``skipped=True`` if another run holds it"""
    lock = sweep_lock(redis_client, timeout=lock_timeout)
    if not lock.acquire():
        sweep_logger.info("Expiry sweep already running elsewhere, skipping")
        sweep_runs_counter.labels(status="skipped").inc()
        return SweepResult(skipped=True)

    try:
        with tracer.start_as_current_span("sweep.run") as span:
            result = sweep_expired_entitlements(session_factory, now_ms=now_ms, page_size=page_size)
            span.set_attribute("paysync.sweep.processed", result.processed)
            span.set_attribute("paysync.sweep.downgrades", result.downgrades)
    except Exception:
        sweep_runs_counter.labels(status="error").inc()
        raise
    finally:
        try:
            lock.release()
        except LockError:
            sweep_logger.warning(f"Sweep lock expired after {lock_timeout}s and was not released by this run")

    sweep_runs_counter.labels(status="success").inc()
    for field, count in result.downgrades_by_field.items():
        if count:
            sweep_downgrades_counter.labels(field=field).inc(count)
    return result
