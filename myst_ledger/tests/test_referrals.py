"""
Unit Tests for referral codes and the identity store

Tests cover:
1. Referral code format
2. Applying codes, including invalid, self and repeat referrals
3. Referral edges used by spend distribution
4. Wallet linking and XP
"""

import pytest

from myst_ledger.errors import ReferralError, UserNotFound
from myst_ledger.identity import generate_referral_code

from .helpers import refer


class TestReferralCodes:
    """Tests for code generation and registration."""

    def test_code_format(self):
        """Test AKARI_<last 6 of telegram id>_<4 random chars>."""
        code = generate_referral_code("123456789")

        prefix, middle, suffix = code.split("_")
        assert prefix == "AKARI"
        assert middle == "456789"
        assert len(suffix) == 4
        assert suffix.isalnum() and suffix.upper() == suffix

    def test_register_is_idempotent(self, service):
        """Test that registering twice keeps the first referral code."""
        first = service.register_user("alice", telegram_id="100200300")
        second = service.register_user("alice", telegram_id="100200300")

        assert first == second
        assert first.startswith("AKARI_200300_")


class TestApplyReferralCode:
    """Tests for attaching a referrer to a user."""

    def test_apply_code(self, service):
        """Test that a valid code sets the direct referrer."""
        code = service.register_user("bob")
        service.register_user("alice")

        referrer_id = service.apply_referral_code("alice", code)

        assert referrer_id == "bob"
        edge = service.db.run(lambda session: service.identity.referral_edge(session, "alice"))
        assert edge.referrer_level1_id == "bob"
        assert edge.referrer_level2_id is None

    def test_two_level_edge(self, service):
        """Test that the edge includes the referrer's own referrer."""
        refer(service, "carol", "bob")
        refer(service, "bob", "alice")

        edge = service.db.run(lambda session: service.identity.referral_edge(session, "alice"))

        assert edge.referrer_level1_id == "bob"
        assert edge.referrer_level2_id == "carol"

    def test_invalid_code(self, service):
        """Test that an unknown code is rejected."""
        service.register_user("alice")

        with pytest.raises(ReferralError, match="Invalid referral code"):
            service.apply_referral_code("alice", "AKARI_000000_NOPE")

    def test_self_referral(self, service):
        """Test that users cannot refer themselves."""
        code = service.register_user("alice")

        with pytest.raises(ReferralError, match="Cannot refer yourself"):
            service.apply_referral_code("alice", code)

    def test_referrer_is_write_once(self, service):
        """Test that a second code does not replace the first referrer."""
        refer(service, "bob", "alice")
        other = service.register_user("dave")

        with pytest.raises(ReferralError, match="Already have a referrer"):
            service.apply_referral_code("alice", other)

        edge = service.db.run(lambda session: service.identity.referral_edge(session, "alice"))
        assert edge.referrer_level1_id == "bob"

    def test_two_cycle_rejected(self, service):
        """Test that a user cannot be referred by someone they referred."""
        refer(service, "bob", "alice")
        alice_code = service.register_user("alice")

        with pytest.raises(ReferralError, match="cycle"):
            service.apply_referral_code("bob", alice_code)

    def test_unknown_user(self, service):
        """Test that the referred user must exist."""
        code = service.register_user("bob")

        with pytest.raises(UserNotFound):
            service.apply_referral_code("ghost", code)


class TestProfile:
    """Tests for wallet and XP collaborators."""

    def test_link_wallet(self, service):
        """Test that a linked TON address is stored."""
        service.register_user("alice")
        service.link_ton_address("alice", "UQ-alice-wallet")

        address = service.db.run(lambda session: service.identity.ton_address(session, "alice"))
        assert address == "UQ-alice-wallet"

    def test_award_xp(self, service):
        """Test that XP accumulates and must be positive."""
        service.register_user("alice")

        service.db.run(lambda session: service.identity.award_xp(session, "alice", 15))
        service.db.run(lambda session: service.identity.award_xp(session, "alice", 5))

        assert service.xp_of("alice") == 20
        with pytest.raises(ValueError):
            service.db.run(lambda session: service.identity.award_xp(session, "alice", 0))
