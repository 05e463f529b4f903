import os
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .models import PrizeType, WheelPrize


DEFAULT_WHEEL_PRIZES = [
    WheelPrize(type=PrizeType.AXP, label="aXP +5", axp=5, weight=22),
    WheelPrize(type=PrizeType.MYST, label="0.1 MYST", myst=Decimal("0.1"), weight=15),
    WheelPrize(type=PrizeType.AXP, label="aXP +10", axp=10, weight=18),
    WheelPrize(type=PrizeType.MYST, label="0.5 MYST", myst=Decimal("0.5"), weight=10),
    WheelPrize(type=PrizeType.AXP, label="aXP +15", axp=15, weight=14),
    WheelPrize(type=PrizeType.AXP, label="aXP +20", axp=20, weight=10),
    WheelPrize(type=PrizeType.AXP, label="aXP +25", axp=25, weight=6),
    WheelPrize(type=PrizeType.MYST, label="1 MYST", myst=Decimal("1"), weight=5),
]

FALLBACK_WHEEL_PRIZE = WheelPrize(type=PrizeType.AXP, label="aXP +5", axp=5, weight=0)


class LedgerConfig(BaseModel):
    """Economic parameters injected into every ledger component.

    Spend splits must sum to exactly 1 and the referral reward rates are
    paid out of the referral split, so they may not exceed it.
    """

    model_config = ConfigDict(frozen=True)

    database_url: str = "sqlite:///myst_ledger.db"
    db_max_retries: int = Field(default=8, ge=1)

    # 1 USD = 50 MYST
    myst_per_usd: Decimal = Decimal("50")

    split_leaderboard: Decimal = Decimal("0.15")
    split_referral: Decimal = Decimal("0.10")
    split_wheel: Decimal = Decimal("0.05")
    split_treasury: Decimal = Decimal("0.70")

    referral_level1_rate: Decimal = Decimal("0.08")
    referral_level2_rate: Decimal = Decimal("0.02")

    promo_cutoff: datetime = datetime(2026, 1, 1, tzinfo=timezone.utc)
    onboarding_bonus_amount: Decimal = Decimal("5")
    referral_milestone_amount: Decimal = Decimal("10")
    referral_milestone_threshold: int = 5

    prediction_fee_rate: Decimal = Decimal("0.08")
    minimum_bet: Decimal = Decimal("2")

    withdrawal_fee_rate: Decimal = Decimal("0.02")
    withdrawal_min_usd: Decimal = Decimal("50")

    stars_per_myst: Decimal = Decimal("100")

    wheel_spins_per_day: int = 2
    wheel_prizes: list[WheelPrize] = Field(default_factory=lambda: list(DEFAULT_WHEEL_PRIZES))
    wheel_fallback_prize: WheelPrize = FALLBACK_WHEEL_PRIZE

    ton_price_env: Optional[Decimal] = None
    ton_price_fallback: Decimal = Decimal("5.0")
    ton_price_cache_seconds: float = 30.0
    ton_price_timeout_seconds: float = 5.0

    @model_validator(mode="after")
    def _check_rates(self) -> "LedgerConfig":
        total = self.split_leaderboard + self.split_referral + self.split_wheel + self.split_treasury
        if total != Decimal("1"):
            raise ValueError(f"Spend splits must sum to 1, got {total}")
        if self.referral_level1_rate + self.referral_level2_rate > self.split_referral:
            raise ValueError("Referral reward rates exceed the referral split")
        if self.promo_cutoff.tzinfo is None:
            raise ValueError("promo_cutoff must be timezone-aware")
        if not any(p.weight > 0 for p in self.wheel_prizes):
            raise ValueError("Wheel prize table needs at least one positive weight")
        if self.wheel_fallback_prize.type != PrizeType.AXP:
            raise ValueError("Wheel fallback prize must be non-monetary")
        return self

    @property
    def usd_per_myst(self) -> Decimal:
        return Decimal("1") / self.myst_per_usd

    @classmethod
    def from_env(cls, **overrides) -> "LedgerConfig":
        values: dict = {}
        if os.getenv("MYST_DATABASE_URL"):
            values["database_url"] = os.getenv("MYST_DATABASE_URL")
        if os.getenv("MYST_DB_MAX_RETRIES"):
            values["db_max_retries"] = int(os.getenv("MYST_DB_MAX_RETRIES"))
        if os.getenv("MYST_PROMO_CUTOFF"):
            cutoff = datetime.fromisoformat(os.getenv("MYST_PROMO_CUTOFF").replace("Z", "+00:00"))
            values["promo_cutoff"] = cutoff if cutoff.tzinfo else cutoff.replace(tzinfo=timezone.utc)
        if os.getenv("MYST_WHEEL_SPINS_PER_DAY"):
            values["wheel_spins_per_day"] = int(os.getenv("MYST_WHEEL_SPINS_PER_DAY"))
        if os.getenv("MYST_WITHDRAWAL_MIN_USD"):
            values["withdrawal_min_usd"] = Decimal(os.getenv("MYST_WITHDRAWAL_MIN_USD"))
        if os.getenv("TON_PRICE_USD"):
            values["ton_price_env"] = Decimal(os.getenv("TON_PRICE_USD"))
        values.update(overrides)
        return cls(**values)
