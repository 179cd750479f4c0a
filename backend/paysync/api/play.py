"""Google Play purchase verification route"""
import logging
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from paysync.api.deps import get_app_settings, get_billing, get_session_factory
from paysync.core.config import Settings
from paysync.core.exceptions import (
    PaymentVerificationError,
    ProviderAuthError,
    ProviderNotConfiguredError,
    ProviderUnavailableError,
    ReferenceConflictError,
    TransactionAbortedError,
)
from paysync.schemas.payments import PlayVerifyRequest
from paysync.services.payment_service import acknowledge_quietly, verify_play_purchase
from paysync.services.play_client import GooglePlayClient

router = APIRouter(prefix="/api/play", tags=["play"])
logger = logging.getLogger(__name__)


@router.post("/verify-subscription")
def verify_subscription(
    verify_request: PlayVerifyRequest,
    background_tasks: BackgroundTasks,
    settings: Settings = Depends(get_app_settings),
    session_factory: sessionmaker = Depends(get_session_factory),
    billing: Optional[GooglePlayClient] = Depends(get_billing)
):
    """Verify a Play purchase token and activate premium for the account"""
    try:
        body, acknowledgement = verify_play_purchase(
            verify_request, settings=settings, session_factory=session_factory, billing=billing
        )
    except ValueError as e:
        return JSONResponse(status_code=400, content={"ok": False, "error": str(e)})
    except PaymentVerificationError as e:
        logger.info(f"Play verification failed for {verify_request.account_id}: {e.details}")
        return JSONResponse(status_code=402, content={"ok": False, "error": str(e), "details": e.details})
    except ReferenceConflictError as e:
        return JSONResponse(status_code=409, content={"ok": False, "error": str(e)})
    except ProviderAuthError as e:
        logger.error(f"Play auth/permission failure: {e}")
        return JSONResponse(status_code=401, content={"ok": False, "error": "Play auth/permission", "details": str(e)})
    except (ProviderUnavailableError, ProviderNotConfiguredError, TransactionAbortedError, SQLAlchemyError) as e:
        logger.warning(f"Play verification for {verify_request.account_id} failed transiently: {e}")
        return JSONResponse(status_code=503, content={"ok": False, "reason": "retry"})

    if acknowledgement:
        # Runs after the response; a failure never undoes the entitlement
        background_tasks.add_task(acknowledge_quietly, billing, *acknowledgement)
    return body
