"""
Unit Tests for LedgerConfig

Tests cover:
1. Canonical defaults
2. Validation of splits, referral rates and the prize table
3. Environment overrides
"""

from datetime import datetime, timezone
from decimal import Decimal

import pytest
from pydantic import ValidationError

from myst_ledger.config import LedgerConfig
from myst_ledger.models import PrizeType, WheelPrize


class TestDefaults:
    def test_canonical_economics(self):
        """Test the default economic parameters."""
        config = LedgerConfig()

        assert config.split_leaderboard + config.split_referral + config.split_wheel + config.split_treasury == 1
        assert config.referral_level1_rate == Decimal("0.08")
        assert config.referral_level2_rate == Decimal("0.02")
        assert config.promo_cutoff == datetime(2026, 1, 1, tzinfo=timezone.utc)
        assert config.usd_per_myst == Decimal("0.02")
        assert sum(p.weight for p in config.wheel_prizes) == 100

    def test_frozen(self):
        """Test that configs cannot be mutated after construction."""
        config = LedgerConfig()

        with pytest.raises(ValidationError):
            config.wheel_spins_per_day = 5


class TestValidation:
    def test_splits_must_sum_to_one(self):
        with pytest.raises(ValidationError, match="sum to 1"):
            LedgerConfig(split_treasury=Decimal("0.60"))

    def test_referral_rates_within_split(self):
        with pytest.raises(ValidationError, match="exceed"):
            LedgerConfig(referral_level1_rate=Decimal("0.09"), referral_level2_rate=Decimal("0.02"))

    def test_naive_cutoff_rejected(self):
        with pytest.raises(ValidationError):
            LedgerConfig(promo_cutoff=datetime(2026, 1, 1))

    def test_prize_table_needs_weight(self):
        prizes = [WheelPrize(type=PrizeType.AXP, label="aXP +5", axp=5, weight=0)]

        with pytest.raises(ValidationError):
            LedgerConfig(wheel_prizes=prizes)

    def test_fallback_must_be_xp(self):
        fallback = WheelPrize(type=PrizeType.MYST, label="1 MYST", myst=Decimal("1"))

        with pytest.raises(ValidationError):
            LedgerConfig(wheel_fallback_prize=fallback)


class TestFromEnv:
    def test_env_overrides(self, monkeypatch):
        """Test that environment variables override defaults."""
        monkeypatch.setenv("MYST_DATABASE_URL", "sqlite:///other.db")
        monkeypatch.setenv("MYST_PROMO_CUTOFF", "2027-03-01T00:00:00Z")
        monkeypatch.setenv("MYST_WHEEL_SPINS_PER_DAY", "3")
        monkeypatch.setenv("MYST_WITHDRAWAL_MIN_USD", "25")
        monkeypatch.setenv("TON_PRICE_USD", "4.75")
        monkeypatch.setenv("MYST_DB_MAX_RETRIES", "2")

        config = LedgerConfig.from_env()

        assert config.database_url == "sqlite:///other.db"
        assert config.promo_cutoff == datetime(2027, 3, 1, tzinfo=timezone.utc)
        assert config.wheel_spins_per_day == 3
        assert config.withdrawal_min_usd == Decimal("25")
        assert config.ton_price_env == Decimal("4.75")
        assert config.db_max_retries == 2

    def test_keyword_overrides_win(self, monkeypatch):
        monkeypatch.setenv("MYST_WHEEL_SPINS_PER_DAY", "3")

        assert LedgerConfig.from_env(wheel_spins_per_day=7).wheel_spins_per_day == 7

    def test_naive_env_cutoff_is_utc(self, monkeypatch):
        monkeypatch.setenv("MYST_PROMO_CUTOFF", "2026-06-01T00:00:00")

        assert LedgerConfig.from_env().promo_cutoff == datetime(2026, 6, 1, tzinfo=timezone.utc)
