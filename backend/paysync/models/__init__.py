"""SQLAlchemy models package - imports all models so they register with Base.metadata"""
from paysync.models.account import Account
from paysync.models.payment_ledger import PaymentLedgerEntry
from paysync.models.entitlement import Entitlement

# Export all for convenience
__all__ = ["Account", "PaymentLedgerEntry", "Entitlement"]
