"""Operator task routes"""

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from redis.exceptions import RedisError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from paysync.api.deps import get_app_settings, get_redis, get_session_factory
from paysync.core.config import Settings
from paysync.core.logging import sweep_logger
from paysync.core.exceptions import TransactionAbortedError
from paysync.core.security import require_operator
from paysync.services.sweeper import run_locked_sweep

router = APIRouter(prefix="/api/tasks", tags=["tasks"], dependencies=[Depends(require_operator)])


@router.post("/expire")
def expire_entitlements(
    settings: Settings = Depends(get_app_settings),
    session_factory: sessionmaker = Depends(get_session_factory),
    redis_client=Depends(get_redis)
):
    """Run the expiry sweep now"""
    try:
        result = run_locked_sweep(
            session_factory,
            redis_client,
            page_size=settings.SWEEP_PAGE_SIZE,
            lock_timeout=settings.SWEEP_LOCK_TIMEOUT,
        )
    except (RedisError, SQLAlchemyError, TransactionAbortedError) as e:
        sweep_logger.error(f"Operator-triggered sweep failed: {e}", exc_info=True)
        return JSONResponse(status_code=503, content={"ok": False, "reason": "retry"})

    body = {"ok": True, "processed": result.processed, "downgrades": result.downgrades}
    if result.skipped:
        body["skipped"] = True
    return body
