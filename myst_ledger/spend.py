import logging
from decimal import Decimal
from typing import Callable, Optional

from sqlalchemy.orm import Session

from .config import LedgerConfig
from .db import Database, ReferralEventRow
from .errors import InsufficientBalance
from .identity import IdentityStore
from .models import (
    SPEND_TYPES,
    EntryType,
    PoolId,
    ReferralEdge,
    ReferralRewards,
    SpendResult,
    SpendSplits,
    quantize_myst,
)
from .store import LedgerStore


logger = logging.getLogger(__name__)


def compute_splits(amount: Decimal, config: LedgerConfig) -> SpendSplits:
    """Fixed-percentage split of a spend; treasury absorbs the rounding remainder."""
    leaderboard = quantize_myst(amount * config.split_leaderboard)
    referral = quantize_myst(amount * config.split_referral)
    wheel = quantize_myst(amount * config.split_wheel)
    treasury = amount - leaderboard - referral - wheel
    return SpendSplits(leaderboard=leaderboard, referral=referral, wheel=wheel, treasury=treasury)


def compute_referral_rewards(amount: Decimal, edge: ReferralEdge, config: LedgerConfig) -> ReferralRewards:
    rewards = ReferralRewards()
    if edge.referrer_level1_id:
        rewards.level1_user_id = edge.referrer_level1_id
        rewards.level1_amount = quantize_myst(amount * config.referral_level1_rate)
        if edge.referrer_level2_id:
            rewards.level2_user_id = edge.referrer_level2_id
            rewards.level2_amount = quantize_myst(amount * config.referral_level2_rate)
    return rewards


class SpendEngine:
    """Debits a spender and distributes the spend across pools and referrers.

    Given a spend S the leaderboard, referral and wheel shares are floored
    to base units and the treasury takes the rest. The direct referrer earns
    a share of S and the indirect referrer a smaller one, both paid from the
    referral share; whatever the referral share does not pay out is added
    to the treasury delta. The referral pool itself never accumulates.
    """

    def __init__(
        self,
        db: Database,
        store: LedgerStore,
        identity: IdentityStore,
        config: LedgerConfig,
        clock: Callable,
    ):
        self.db = db
        self.store = store
        self.identity = identity
        self.config = config
        self.clock = clock

    def spend(
        self,
        user_id: str,
        amount: Decimal,
        spend_type: EntryType = EntryType.SPEND_BET,
        reference_id: Optional[str] = None,
    ) -> SpendResult:
        amount = Decimal(amount)
        if amount <= 0 or quantize_myst(amount) != amount:
            raise ValueError("Spend amount must be a positive MYST amount")
        spend_type = EntryType(spend_type)
        if spend_type not in SPEND_TYPES:
            raise ValueError(f"{spend_type.value} is not a spend type")
        if spend_type == EntryType.SPEND_BET and amount < self.config.minimum_bet:
            raise ValueError(f"Minimum bet is {self.config.minimum_bet} MYST")

        result = self.db.run(
            lambda session: self._spend(session, user_id, amount, spend_type, reference_id),
            label="spend",
        )
        logger.info(
            "User %s spent %s MYST (%s) -> leaderboard %s, wheel %s, treasury %s, L1 %s, L2 %s",
            user_id, amount, spend_type.value,
            result.pool_deltas[PoolId.LEADERBOARD], result.pool_deltas[PoolId.WHEEL],
            result.pool_deltas[PoolId.TREASURY],
            result.referral_rewards.level1_amount, result.referral_rewards.level2_amount,
        )
        return result

    def _spend(
        self,
        session: Session,
        user_id: str,
        amount: Decimal,
        spend_type: EntryType,
        reference_id: Optional[str],
    ) -> SpendResult:
        self.identity.get_user(session, user_id)
        self.store.lock_account(session, user_id)
        balance = self.store.get_balance(session, user_id)
        if balance < amount:
            raise InsufficientBalance(balance, amount)

        edge = self.identity.referral_edge(session, user_id)
        splits = compute_splits(amount, self.config)
        rewards = compute_referral_rewards(amount, edge, self.config)
        unused_referral = splits.referral - rewards.level1_amount - rewards.level2_amount

        pool_deltas = {
            PoolId.LEADERBOARD: splits.leaderboard,
            PoolId.REFERRAL: Decimal("0"),
            PoolId.WHEEL: splits.wheel,
            PoolId.TREASURY: splits.treasury + unused_referral,
        }

        now = self.clock()
        self.store.append_entry(
            session, user_id, spend_type, -amount,
            meta={"referenceId": reference_id, "spendType": spend_type.value},
            created_at=now,
        )
        reward_meta = {
            "fromUserId": user_id,
            "originalSpend": amount,
            "spendType": spend_type.value,
            "referenceId": reference_id,
        }
        if rewards.level1_user_id and rewards.level1_amount > 0:
            self.store.append_entry(
                session, rewards.level1_user_id, EntryType.REFERRAL_REWARD_L1,
                rewards.level1_amount, meta=reward_meta, created_at=now,
            )
        if rewards.level2_user_id and rewards.level2_amount > 0:
            self.store.append_entry(
                session, rewards.level2_user_id, EntryType.REFERRAL_REWARD_L2,
                rewards.level2_amount, meta=reward_meta, created_at=now,
            )

        session.add(ReferralEventRow(
            user_id=user_id,
            referrer_level1_id=rewards.level1_user_id,
            reward_level1=rewards.level1_amount,
            referrer_level2_id=rewards.level2_user_id,
            reward_level2=rewards.level2_amount,
            amount_spent=amount,
            spend_type=spend_type.value,
            reference_id=reference_id,
            created_at=now,
        ))

        for pool_id, delta in pool_deltas.items():
            self.store.credit_pool(session, pool_id, delta)

        return SpendResult(
            user_id=user_id,
            spent=amount,
            spend_type=spend_type,
            reference_id=reference_id,
            splits=splits,
            pool_deltas=pool_deltas,
            referral_rewards=rewards,
            new_balance=balance - amount,
        )
