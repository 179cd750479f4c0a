"""Paystack API routes: webhook, client confirmation and checkout initiation"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from paysync.api.deps import get_app_settings, get_gateway, get_session_factory
from paysync.core.config import Settings
from paysync.core.logging import webhook_logger
from paysync.core.exceptions import (
    PaymentVerificationError,
    ProviderAuthError,
    ProviderNotConfiguredError,
    ProviderUnavailableError,
    ReferenceConflictError,
    TransactionAbortedError,
)
from paysync.schemas.payments import ConfirmRequest, InitiateRequest
from paysync.services.payment_service import (
    confirm_gateway_payment,
    initiate_gateway_payment,
    process_gateway_webhook,
)
from paysync.services.paystack_client import PaystackClient

router = APIRouter(prefix="/api/paystack", tags=["paystack"])
logger = logging.getLogger(__name__)

RETRY_RESPONSE = {"ok": False, "reason": "retry"}


@router.post("/webhook")
async def paystack_webhook(
    request: Request,
    settings: Settings = Depends(get_app_settings),
    session_factory: sessionmaker = Depends(get_session_factory)
):
    """Handle Paystack webhook events

    Always answers 200 so Paystack does not redeliver events we have already
    classified; the body carries the outcome.
    """
    # Raw bytes: the signature covers the exact body
    payload = await request.body()
    signature = request.headers.get("x-paystack-signature")

    try:
        return await run_in_threadpool(
            process_gateway_webhook, payload, signature, settings=settings, session_factory=session_factory
        )
    except Exception as e:
        # Unexpected error - log but return 200 to prevent retries
        webhook_logger.error(f"Unexpected error processing Paystack webhook: {e}", exc_info=True)
        return {"ok": False, "reason": "internal"}


@router.post("/confirm")
def confirm_payment(
    confirm_request: ConfirmRequest,
    settings: Settings = Depends(get_app_settings),
    session_factory: sessionmaker = Depends(get_session_factory),
    gateway: Optional[PaystackClient] = Depends(get_gateway)
):
    """Confirm a Paystack transaction from the client and activate premium"""
    try:
        return confirm_gateway_payment(
            confirm_request, settings=settings, session_factory=session_factory, gateway=gateway
        )
    except PaymentVerificationError as e:
        logger.info(f"Confirmation rejected for {confirm_request.reference}: {e.details}")
        return JSONResponse(status_code=400, content={"ok": False, "message": str(e), "details": e.details})
    except ReferenceConflictError as e:
        return JSONResponse(status_code=409, content={"ok": False, "message": str(e)})
    except ProviderAuthError as e:
        logger.error(f"Paystack auth failure during confirmation: {e}")
        return JSONResponse(status_code=401, content={"ok": False, "message": "Payment provider auth/permission"})
    except (ProviderUnavailableError, ProviderNotConfiguredError, TransactionAbortedError, SQLAlchemyError) as e:
        logger.warning(f"Confirmation for {confirm_request.reference} failed transiently: {e}")
        return JSONResponse(status_code=503, content=RETRY_RESPONSE)


@router.post("/initiate")
def initiate_payment(
    initiate_request: InitiateRequest,
    settings: Settings = Depends(get_app_settings),
    gateway: Optional[PaystackClient] = Depends(get_gateway)
):
    """Create a Paystack checkout for an account"""
    try:
        return initiate_gateway_payment(initiate_request, settings=settings, gateway=gateway)
    except PaymentVerificationError as e:
        logger.warning(f"Paystack refused checkout for {initiate_request.account_id}: {e.details}")
        return JSONResponse(status_code=400, content={"ok": False, "message": "Init failed", "details": e.details})
    except ProviderAuthError as e:
        logger.error(f"Paystack auth failure during initiation: {e}")
        return JSONResponse(status_code=401, content={"ok": False, "message": "Payment provider auth/permission"})
    except (ProviderUnavailableError, ProviderNotConfiguredError) as e:
        logger.warning(f"Checkout initiation failed transiently: {e}")
        return JSONResponse(status_code=503, content=RETRY_RESPONSE)
