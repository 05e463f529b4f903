import logging
import random
import threading
from datetime import datetime, time, timedelta, timezone
from decimal import Decimal
from typing import Callable, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from .config import LedgerConfig
from .db import Database, WheelSpinRow
from .errors import PoolInsufficient, QuotaExceeded
from .identity import IdentityStore
from .models import EntryType, PoolId, PrizeType, SpinResult, WheelPrize
from .store import LedgerStore


logger = logging.getLogger(__name__)


def utc_day_start(now: datetime) -> datetime:
    now = now.astimezone(timezone.utc)
    return datetime.combine(now.date(), time.min, tzinfo=timezone.utc)


def select_wheel_prize(
    prizes: list[WheelPrize],
    pool_balance: Decimal,
    fallback: WheelPrize,
    rng: random.Random,
) -> tuple[WheelPrize, bool]:
    """Weighted draw; MYST prizes the wheel pool cannot cover become ``fallback``."""
    prize = rng.choices(prizes, weights=[p.weight for p in prizes], k=1)[0]
    if prize.type == PrizeType.MYST and prize.myst > pool_balance:
        return fallback, True
    return prize, False


class WheelOfFortune:
    def __init__(
        self,
        db: Database,
        store: LedgerStore,
        identity: IdentityStore,
        config: LedgerConfig,
        clock: Callable,
        rng: Optional[random.Random] = None,
    ):
        self.db = db
        self.store = store
        self.identity = identity
        self.config = config
        self.clock = clock
        self.rng = rng or random.Random()
        self._rng_lock = threading.Lock()

    def spins_today(self, session: Session, user_id: str, now: datetime) -> int:
        day_start = utc_day_start(now)
        stmt = select(func.count()).select_from(WheelSpinRow).where(
            WheelSpinRow.user_id == user_id,
            WheelSpinRow.created_at >= day_start,
            WheelSpinRow.created_at < day_start + timedelta(days=1),
        )
        return session.scalar(stmt)

    def spin(self, user_id: str) -> SpinResult:
        result = self.db.run(lambda session: self._spin(session, user_id), label="wheel spin")
        logger.info(
            "User %s spun the wheel: %s%s (%d spin(s) left today)",
            user_id, result.prize.label, " [downgraded]" if result.downgraded else "", result.spins_remaining,
        )
        return result

    def _spin(self, session: Session, user_id: str) -> SpinResult:
        now = self.clock()
        cap = self.config.wheel_spins_per_day

        self.identity.get_user(session, user_id)
        self.store.lock_account(session, user_id)
        used = self.spins_today(session, user_id, now)
        if used >= cap:
            raise QuotaExceeded(used, cap)

        pool_balance = self.store.pool_balance(session, PoolId.WHEEL)
        with self._rng_lock:
            prize, downgraded = select_wheel_prize(
                self.config.wheel_prizes, pool_balance, self.config.wheel_fallback_prize, self.rng
            )

        if prize.type == PrizeType.MYST:
            try:
                self.store.debit_pool(session, PoolId.WHEEL, prize.myst)
            except PoolInsufficient:
                # another spin drained the pool after our read
                logger.info("Wheel pool drained before payout, downgrading %s for %s", prize.label, user_id)
                prize, downgraded = self.config.wheel_fallback_prize, True

        if prize.type == PrizeType.MYST:
            self.store.append_entry(
                session, user_id, EntryType.WHEEL_PRIZE, prize.myst,
                meta={"label": prize.label},
                created_at=now,
            )
        else:
            self.identity.award_xp(session, user_id, prize.axp)

        session.add(WheelSpinRow(
            user_id=user_id,
            prize_label=prize.label,
            prize_type=prize.type.value,
            myst_awarded=prize.myst if prize.type == PrizeType.MYST else Decimal("0"),
            xp_awarded=prize.axp if prize.type == PrizeType.AXP else 0,
            created_at=now,
        ))
        session.flush()

        return SpinResult(
            prize=prize,
            downgraded=downgraded,
            spins_remaining=cap - used - 1,
            wheel_pool_balance=self.store.pool_balance(session, PoolId.WHEEL),
        )
