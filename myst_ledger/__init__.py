"""
MYST Token Ledger & Spend-Distribution Engine

This module provides:
- Append-only ledger entries; balances are the sum of a user's entries
- Spend distribution across the leaderboard, wheel and treasury pools
- Two-level referral rewards paid from the referral share
- One-time promotional grants (onboarding bonus, referral milestone)
- Pari-mutuel prediction settlement
- MYST -> TON withdrawals: pending → approved → paid / rejected
- The daily wheel of fortune backed by the wheel pool
"""

from .config import LedgerConfig
from .errors import (
    BelowMinimum,
    InsufficientBalance,
    LedgerError,
    PoolInsufficient,
    QuotaExceeded,
    TransientLedgerError,
)
from .models import (
    EntryType,
    PoolId,
    WithdrawalStatus,
    LedgerEntry,
    SpendResult,
    UserBalance,
)
from .service import LedgerService

__all__ = [
    "LedgerConfig",
    "LedgerError",
    "InsufficientBalance",
    "BelowMinimum",
    "QuotaExceeded",
    "PoolInsufficient",
    "TransientLedgerError",
    "EntryType",
    "PoolId",
    "WithdrawalStatus",
    "LedgerEntry",
    "SpendResult",
    "UserBalance",
    "LedgerService",
]
