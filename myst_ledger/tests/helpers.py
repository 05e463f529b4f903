from datetime import datetime, timezone
from decimal import Decimal

from myst_ledger.models import EntryType
from myst_ledger.service import LedgerService


# Before the default promo cutoff (2026-01-01Z)
NOW = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)


def register_and_fund(service: LedgerService, user_id: str, amount="0", **profile) -> str:
    """Register a user and give them an admin grant; returns the referral code."""
    code = service.register_user(user_id, **profile)
    if Decimal(amount) > 0:
        service.credit(user_id, Decimal(amount), EntryType.ADMIN_GRANT)
    return code


def refer(service: LedgerService, referrer_id: str, user_id: str) -> None:
    """Register both users (if needed) and point ``user_id`` at ``referrer_id``."""
    code = service.register_user(referrer_id)
    service.register_user(user_id)
    service.apply_referral_code(user_id, code)
