"""Maps a payment event to the account it pays for"""
import logging
from typing import Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from paysync.models.account import Account
from paysync.schemas.events import PaymentEvent

logger = logging.getLogger(__name__)


def resolve_account_id(db: Session, event: PaymentEvent) -> Optional[str]:
    """Resolve the account for ``event``.

    1. the identifier the initiating party embedded in the event metadata
    2. a case-insensitive email match against the account directory, only
       when it matches exactly one account

    Returns None when neither yields an account.
    """
    if event.metadata_account_id:
        return event.metadata_account_id

    if not event.email:
        logger.info(f"No account hint or email on {event.provider.value} event {event.reference}")
        return None

    matches = (
        db.query(Account.id)
        .filter(func.lower(Account.email) == event.email.strip().lower())
        .limit(2)
        .all()
    )
    if len(matches) == 1:
        logger.info(f"Resolved {event.reference} to account {matches[0].id} by email")
        return matches[0].id
    if matches:
        logger.warning(f"Email on {event.reference} matches several accounts; refusing to guess")
    else:
        logger.info(f"Email on {event.reference} matches no account")
    return None
