"""
Unit Tests for the ledger store and the service's funding operations

Tests cover:
1. Balance as the exact sum of entries
2. Entry validation
3. Pool counters
4. Funding credits and Stars conversion
5. History, pool transfers and leaderboards
"""

from datetime import timedelta
from decimal import Decimal

import pytest

from myst_ledger.errors import PoolInsufficient
from myst_ledger.models import EntryType, PoolId

from .helpers import NOW, refer, register_and_fund


class TestBalanceProjection:
    """Tests for balances derived from entries."""

    def test_balance_is_sum_of_entries(self, service):
        """Test that grants, spends and credits add up exactly."""
        register_and_fund(service, "alice", "12.12345678")
        service.grant_onboarding_if_eligible("alice")
        service.spend("alice", Decimal("2.5"), EntryType.SPEND_BET)
        service.credit("alice", Decimal("0.00000001"), EntryType.TON_DEPOSIT)

        history = service.get_ledger_history("alice")

        assert history.current_balance == Decimal("14.62345679")
        assert history.total_count == 4
        assert sum(e.amount for e in history.entries) == history.current_balance

    def test_unknown_user_has_zero_balance(self, service):
        """Test that a user without entries reads as zero."""
        summary = service.balance_summary("nobody")

        assert summary.current_balance == 0
        assert summary.total_entries == 0
        assert summary.last_transaction_at is None

    def test_zero_entry_rejected(self, service):
        """Test that zero-amount entries cannot be appended."""
        with pytest.raises(ValueError):
            service.db.run(
                lambda session: service.store.append_entry(session, "alice", EntryType.ADMIN_GRANT, Decimal("0"))
            )

    def test_history_pagination(self, service, clock):
        """Test newest-first pagination over a user's entries."""
        register_and_fund(service, "alice")
        for i in range(5):
            clock.advance(minutes=1)
            service.credit("alice", Decimal(i + 1))

        page = service.get_ledger_history("alice", limit=2, offset=1)

        assert page.total_count == 5
        assert [e.amount for e in page.entries] == [Decimal("4"), Decimal("3")]
        assert page.current_balance == Decimal("15")


class TestFunding:
    """Tests for externally funded credits."""

    def test_credit_types(self, service):
        """Test that only funding entry types can be credited directly."""
        register_and_fund(service, "alice")

        entry = service.credit("alice", Decimal("10"), EntryType.TON_DEPOSIT, meta={"txHash": "abc"})
        assert entry.entry_type == EntryType.TON_DEPOSIT
        assert entry.meta == {"txHash": "abc"}

        with pytest.raises(ValueError):
            service.credit("alice", Decimal("10"), EntryType.WHEEL_PRIZE)
        with pytest.raises(ValueError):
            service.credit("alice", Decimal("-1"))

    def test_convert_stars(self, service):
        """Test 100 Stars = 1 MYST."""
        register_and_fund(service, "alice")

        entry = service.convert_stars("alice", 250)

        assert entry.entry_type == EntryType.STARS_CONVERSION
        assert entry.amount == Decimal("2.5")
        assert entry.meta["starsAmount"] == 250
        assert service.get_balance("alice") == Decimal("2.5")


class TestPools:
    """Tests for pool counters and admin transfers."""

    def test_all_pools_seeded(self, service):
        """Test that every pool exists with a zero balance."""
        pools = {p.pool_id: p.balance for p in service.pool_balances()}

        assert set(pools) == set(PoolId)
        assert all(balance == 0 for balance in pools.values())

    def test_debit_pool_cannot_go_negative(self, service):
        """Test the conditional pool debit."""
        with pytest.raises(PoolInsufficient) as exc:
            service.db.run(lambda session: service.store.debit_pool(session, PoolId.WHEEL, Decimal("1")))

        assert exc.value.pool_id == "wheel"
        assert service.pool_balance(PoolId.WHEEL) == 0

    def test_transfer_between_pools(self, service):
        """Test moving value from the treasury to the wheel pool."""
        register_and_fund(service, "alice", "100")
        service.spend("alice", Decimal("100"))

        transfer = service.transfer_between_pools(PoolId.TREASURY, PoolId.WHEEL, Decimal("20"))

        assert transfer.new_from_balance == Decimal("60")
        assert transfer.new_to_balance == Decimal("25")
        assert service.pool_balance(PoolId.TREASURY) == Decimal("60")

    def test_transfer_validation(self, service):
        """Test same-pool, non-positive and uncovered transfers."""
        with pytest.raises(ValueError):
            service.transfer_between_pools(PoolId.WHEEL, PoolId.WHEEL, Decimal("1"))
        with pytest.raises(ValueError):
            service.transfer_between_pools(PoolId.WHEEL, PoolId.TREASURY, Decimal("0"))
        with pytest.raises(PoolInsufficient):
            service.transfer_between_pools(PoolId.WHEEL, PoolId.TREASURY, Decimal("1"))

        assert service.pool_balance(PoolId.TREASURY) == 0

    def test_burn_pool_is_not_transferable(self, service):
        """Test that burned value stays put so a rejected withdrawal can still be refunded."""
        register_and_fund(service, "alice", "5000", ton_address="UQ-alice")
        withdrawal = service.request_withdrawal("alice", Decimal("3000"))

        with pytest.raises(ValueError, match="burn pool"):
            service.transfer_between_pools(PoolId.BURN, PoolId.WHEEL, Decimal("2940"))
        with pytest.raises(ValueError, match="burn pool"):
            service.transfer_between_pools(PoolId.TREASURY, PoolId.BURN, Decimal("10"))

        assert service.pool_balance(PoolId.BURN) == Decimal("2940")
        assert service.pool_balance(PoolId.WHEEL) == 0

        service.reject_withdrawal(withdrawal.id, "Address flagged")
        assert service.get_balance("alice") == Decimal("5000")
        assert service.pool_balance(PoolId.BURN) == 0


class TestLeaderboards:
    """Tests for windowed spender and referrer rankings."""

    def test_top_spenders(self, service, clock):
        """Test that spends inside the window are ranked by total."""
        register_and_fund(service, "alice", "100")
        register_and_fund(service, "bob", "100")
        service.spend("alice", Decimal("10"))
        service.spend("bob", Decimal("30"))
        service.spend("alice", Decimal("5"), EntryType.SPEND_BOOST)
        clock.advance(days=10)
        service.spend("alice", Decimal("50"))

        rows = service.top_spenders(NOW - timedelta(days=1), NOW + timedelta(days=1))

        assert [(r.user_id, r.total_spent) for r in rows] == [("bob", Decimal("30")), ("alice", Decimal("15"))]

    def test_top_referrers(self, service):
        """Test that referral rewards are ranked per referrer."""
        refer(service, "carol", "bob")
        refer(service, "bob", "alice")
        service.credit("alice", Decimal("100"))

        service.spend("alice", Decimal("100"))

        rows = service.top_referrers(NOW - timedelta(days=1), NOW + timedelta(days=1), limit=5)
        assert [(r.user_id, r.total_rewards) for r in rows] == [("bob", Decimal("8")), ("carol", Decimal("2"))]
