import logging
import random
from datetime import datetime
from decimal import Decimal
from typing import Callable, Optional
from uuid import UUID

from .config import LedgerConfig
from .db import Database, utcnow
from .errors import PoolInsufficient
from .grants import PromoGrantManager
from .identity import IdentityStore
from .models import (
    FUNDING_TYPES,
    EntryType,
    GrantResult,
    LedgerEntry,
    LedgerHistoryResponse,
    PoolBalance,
    PoolId,
    PoolTransfer,
    PredictionPayout,
    ReferrerRow,
    SettlementResult,
    SpenderRow,
    SpendResult,
    SpinResult,
    UserBalance,
    WinningStake,
    WithdrawalQuote,
    WithdrawalRequest,
    quantize_myst,
)
from .predictions import PredictionSettlement, calculate_payout
from .pricing import TonPriceFeed
from .spend import SpendEngine
from .store import LedgerStore
from .wheel import WheelOfFortune
from .withdrawals import WithdrawalProcessor


logger = logging.getLogger(__name__)


class LedgerService:
    """Entry point collaborators use for every MYST balance change."""

    def __init__(
        self,
        config: Optional[LedgerConfig] = None,
        db: Optional[Database] = None,
        price_feed=None,
        clock: Optional[Callable[[], datetime]] = None,
        rng: Optional[random.Random] = None,
        create_schema: bool = True,
    ):
        self.config = config or LedgerConfig()
        self.db = db or Database(self.config.database_url, max_retries=self.config.db_max_retries)
        if create_schema:
            self.db.create_all()
        self.clock = clock or utcnow
        self.price_feed = price_feed or TonPriceFeed(self.config)

        self.store = LedgerStore()
        self.identity = IdentityStore()
        self.spend_engine = SpendEngine(self.db, self.store, self.identity, self.config, self.clock)
        self.grants = PromoGrantManager(self.db, self.store, self.identity, self.config, self.clock)
        self.predictions = PredictionSettlement(self.db, self.store, self.config, self.clock)
        self.withdrawals = WithdrawalProcessor(
            self.db, self.store, self.identity, self.price_feed, self.config, self.clock
        )
        self.wheel = WheelOfFortune(self.db, self.store, self.identity, self.config, self.clock, rng=rng)

    @classmethod
    def from_env(cls) -> "LedgerService":
        return cls(config=LedgerConfig.from_env())

    # -- users -----------------------------------------------------------

    def register_user(
        self,
        user_id: str,
        telegram_id: Optional[str] = None,
        username: Optional[str] = None,
        ton_address: Optional[str] = None,
    ) -> str:
        """Create the user if needed and return their referral code."""
        return self.db.run(
            lambda session: self.identity.register_user(
                session, user_id, telegram_id=telegram_id, username=username, ton_address=ton_address
            ).referral_code,
            label="register user",
        )

    def apply_referral_code(self, user_id: str, referral_code: str) -> str:
        referrer_id = self.db.run(
            lambda session: self.identity.apply_referral_code(session, user_id, referral_code),
            label="apply referral code",
        )
        self.grants.grant_referral_milestone_if_eligible(referrer_id)
        return referrer_id

    def link_ton_address(self, user_id: str, address: str) -> None:
        self.db.run(lambda session: self.identity.link_ton_address(session, user_id, address), label="link wallet")

    def xp_of(self, user_id: str) -> int:
        return self.db.run(lambda session: self.identity.xp_of(session, user_id), label="xp lookup")

    # -- balances --------------------------------------------------------

    def get_balance(self, user_id: str) -> Decimal:
        return self.db.run(lambda session: self.store.get_balance(session, user_id), label="balance")

    def balance_summary(self, user_id: str) -> UserBalance:
        def _summary(session) -> UserBalance:
            return UserBalance(
                user_id=user_id,
                current_balance=self.store.get_balance(session, user_id),
                total_entries=self.store.count_entries(session, user_id),
                last_transaction_at=self.store.last_entry_at(session, user_id),
            )

        return self.db.run(_summary, label="balance summary")

    def get_ledger_history(self, user_id: str, limit: int = 50, offset: int = 0) -> LedgerHistoryResponse:
        def _history(session) -> LedgerHistoryResponse:
            return LedgerHistoryResponse(
                user_id=user_id,
                entries=self.store.history(session, user_id, limit, offset),
                total_count=self.store.count_entries(session, user_id),
                current_balance=self.store.get_balance(session, user_id),
            )

        return self.db.run(_history, label="ledger history")

    # -- funding ---------------------------------------------------------

    def credit(
        self,
        user_id: str,
        amount: Decimal,
        entry_type: EntryType = EntryType.ADMIN_GRANT,
        meta: Optional[dict] = None,
    ) -> LedgerEntry:
        """Record an externally funded credit (deposit, admin grant, Stars)."""
        amount = Decimal(amount)
        entry_type = EntryType(entry_type)
        if entry_type not in FUNDING_TYPES:
            raise ValueError(f"{entry_type.value} is not an external funding type")
        if amount <= 0:
            raise ValueError("Credit amount must be positive")

        entry = self.db.run(
            lambda session: self.store.append_entry(
                session, user_id, entry_type, amount, meta=meta, created_at=self.clock()
            ),
            label="credit",
        )
        logger.info("Credited %s MYST to user %s (%s)", entry.amount, user_id, entry_type.value)
        return entry

    def convert_stars(self, user_id: str, stars_amount: int) -> LedgerEntry:
        if stars_amount <= 0:
            raise ValueError("Stars amount must be positive")
        myst = quantize_myst(Decimal(stars_amount) / self.config.stars_per_myst)
        return self.credit(
            user_id, myst, EntryType.STARS_CONVERSION,
            meta={"starsAmount": stars_amount, "rate": self.config.stars_per_myst},
        )

    # -- spending & grants -----------------------------------------------

    def spend(
        self,
        user_id: str,
        amount: Decimal,
        spend_type: EntryType = EntryType.SPEND_BET,
        reference_id: Optional[str] = None,
    ) -> SpendResult:
        return self.spend_engine.spend(user_id, amount, spend_type, reference_id)

    def grant_onboarding_if_eligible(self, user_id: str) -> GrantResult:
        return self.grants.grant_onboarding_if_eligible(user_id)

    def grant_referral_milestone_if_eligible(self, user_id: str) -> GrantResult:
        return self.grants.grant_referral_milestone_if_eligible(user_id)

    # -- predictions -----------------------------------------------------

    def calculate_payout(
        self,
        user_stake: Decimal,
        winning_side_total: Decimal,
        losing_side_total: Decimal,
        fee_rate: Optional[Decimal] = None,
    ) -> PredictionPayout:
        rate = self.config.prediction_fee_rate if fee_rate is None else fee_rate
        return calculate_payout(user_stake, winning_side_total, losing_side_total, rate)

    def settle_prediction(
        self,
        market_id: str,
        winning_stakes: list[WinningStake],
        winning_side_total: Decimal,
        losing_side_total: Decimal,
        fee_rate: Optional[Decimal] = None,
    ) -> SettlementResult:
        return self.predictions.settle(market_id, winning_stakes, winning_side_total, losing_side_total, fee_rate)

    # -- withdrawals -----------------------------------------------------

    def request_withdrawal(
        self, user_id: str, amount: Decimal, external_address: Optional[str] = None
    ) -> WithdrawalRequest:
        return self.withdrawals.request_withdrawal(user_id, amount, external_address)

    def get_withdrawal(self, withdrawal_id: UUID) -> WithdrawalRequest:
        return self.withdrawals.get(withdrawal_id)

    def list_withdrawals(self, user_id: str) -> list[WithdrawalRequest]:
        return self.withdrawals.list_for_user(user_id)

    def approve_withdrawal(self, withdrawal_id: UUID) -> WithdrawalRequest:
        return self.withdrawals.approve(withdrawal_id)

    def mark_withdrawal_paid(self, withdrawal_id: UUID, tx_hash: str) -> WithdrawalRequest:
        return self.withdrawals.mark_paid(withdrawal_id, tx_hash)

    def reject_withdrawal(self, withdrawal_id: UUID, reason: str) -> WithdrawalRequest:
        return self.withdrawals.reject(withdrawal_id, reason)

    def withdrawal_quote_refresh(self, withdrawal_id: UUID) -> WithdrawalQuote:
        return self.withdrawals.refresh_quote(withdrawal_id)

    # -- wheel -----------------------------------------------------------

    def spin_wheel(self, user_id: str) -> SpinResult:
        return self.wheel.spin(user_id)

    # -- pools & leaderboards --------------------------------------------

    def pool_balance(self, pool_id: PoolId) -> Decimal:
        return self.db.run(lambda session: self.store.pool_balance(session, pool_id), label="pool balance")

    def pool_balances(self) -> list[PoolBalance]:
        return self.db.run(self.store.pool_balances, label="pool balances")

    def transfer_between_pools(self, from_pool: PoolId, to_pool: PoolId, amount: Decimal) -> PoolTransfer:
        from_pool, to_pool, amount = PoolId(from_pool), PoolId(to_pool), Decimal(amount)
        if amount <= 0:
            raise ValueError("Amount must be positive")
        if from_pool == to_pool:
            raise ValueError("Cannot transfer to same pool")
        # burned value only leaves the burn pool through a withdrawal rejection
        if PoolId.BURN in (from_pool, to_pool):
            raise ValueError("The burn pool cannot be used in transfers")

        def _transfer(session) -> PoolTransfer:
            self.store.debit_pool(session, from_pool, amount)
            self.store.credit_pool(session, to_pool, amount)
            return PoolTransfer(
                from_pool=from_pool,
                to_pool=to_pool,
                amount=amount,
                new_from_balance=self.store.pool_balance(session, from_pool),
                new_to_balance=self.store.pool_balance(session, to_pool),
            )

        try:
            transfer = self.db.run(_transfer, label="pool transfer")
        except PoolInsufficient:
            logger.warning("Pool transfer of %s MYST from %s refused: insufficient balance", amount, from_pool.value)
            raise
        logger.info("Transfer: %s MYST from %s to %s", amount, from_pool.value, to_pool.value)
        return transfer

    def top_spenders(self, start: datetime, end: datetime, limit: int = 10) -> list[SpenderRow]:
        return self.db.run(lambda session: self.store.top_spenders(session, start, end, limit), label="top spenders")

    def top_referrers(self, start: datetime, end: datetime, limit: int = 10) -> list[ReferrerRow]:
        return self.db.run(lambda session: self.store.top_referrers(session, start, end, limit), label="top referrers")
