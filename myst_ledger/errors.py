from decimal import Decimal
from typing import Optional


class LedgerError(Exception):
    pass


class InsufficientBalance(LedgerError):
    def __init__(self, balance: Decimal, required: Decimal):
        self.balance = balance
        self.required = required
        super().__init__(f"Insufficient MYST balance. Have: {balance:.2f}, Need: {required:.2f}")


class BelowMinimum(LedgerError):
    def __init__(self, net_usd: Decimal, minimum_usd: Decimal):
        self.net_usd = net_usd
        self.minimum_usd = minimum_usd
        super().__init__(f"Minimum withdrawal is ${minimum_usd}. Your net: ${net_usd:.2f}")


class QuotaExceeded(LedgerError):
    def __init__(self, spins_today: int, cap: int):
        self.spins_today = spins_today
        self.cap = cap
        super().__init__(f"Daily wheel spins exhausted ({spins_today}/{cap})")


class PoolInsufficient(LedgerError):
    def __init__(self, pool_id: str, balance: Optional[Decimal], required: Decimal):
        self.pool_id = pool_id
        self.balance = balance
        self.required = required
        super().__init__(f"Pool {pool_id} cannot cover {required} MYST")


class UserNotFound(LedgerError):
    pass


class WalletNotLinked(LedgerError):
    pass


class ReferralError(LedgerError):
    pass


class MarketAlreadySettled(LedgerError):
    pass


class WithdrawalNotFound(LedgerError):
    pass


class InvalidWithdrawalTransition(LedgerError):
    pass


class TransientLedgerError(LedgerError):
    """The atomic commit failed; nothing was written and the call may be retried."""
