"""Webhook signature checks and operator authentication"""
import hashlib
import hmac
from typing import Optional

from fastapi import Header, HTTPException, Request

from paysync.core.logging import security_logger


def verify_paystack_signature(payload: bytes, signature: Optional[str], secret: str) -> bool:
    """Check the x-paystack-signature header (HMAC-SHA512 of the raw body).

    Returns False when either the header or the secret is missing, so an
    unconfigured deployment never accepts an unsigned event.
    """
    if not signature:
        security_logger.warning("Paystack webhook without signature header")
        return False
    if not secret:
        security_logger.error("Paystack webhook received but PAYSTACK_SECRET_KEY is not configured")
        return False

    expected = hmac.new(secret.encode("utf-8"), payload, hashlib.sha512).hexdigest()
    is_valid = hmac.compare_digest(expected, signature.strip())
    if not is_valid:
        security_logger.warning(f"Invalid Paystack signature (prefix {signature[:8]}...)")
    return is_valid

def require_operator(
    request: Request,
    authorization: Optional[str] = Header(None)
) -> None:
    """Dependency: require the operator bearer token for task endpoints"""
    secret = request.app.state.settings.TASKS_SECRET
    if not secret:
        security_logger.warning(f"Operator call rejected, TASKS_SECRET not configured - Path: {request.url.path}")
        raise HTTPException(401, "Operator access is not configured")

    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not hmac.compare_digest(token.strip(), secret):
        client_host = request.client.host if request.client else "unknown"
        security_logger.warning(f"Operator auth failed - IP: {client_host}, Path: {request.url.path}")
        raise HTTPException(401, "Invalid operator credentials")
