import logging
from typing import Callable

from sqlalchemy.orm import Session

from .config import LedgerConfig
from .db import Database
from .identity import IdentityStore
from .models import EntryType, GrantReason, GrantResult
from .store import LedgerStore


logger = logging.getLogger(__name__)


class PromoGrantManager:
    """One-time, time-boxed promotional credits.

    The "already granted" check runs after the user's account row is locked
    and in the same transaction as the insert, so concurrent calls for the
    same user produce exactly one bonus entry.
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

    def grant_onboarding_if_eligible(self, user_id: str) -> GrantResult:
        result = self.db.run(lambda session: self._grant_onboarding(session, user_id), label="onboarding grant")
        if result.granted:
            logger.info("Granted %s MYST onboarding bonus to user %s", result.amount, user_id)
        return result

    def grant_referral_milestone_if_eligible(self, user_id: str) -> GrantResult:
        result = self.db.run(lambda session: self._grant_milestone(session, user_id), label="referral milestone")
        if result.granted:
            logger.info("Granted %s MYST referral milestone to user %s", result.amount, user_id)
        return result

    def _grant_onboarding(self, session: Session, user_id: str) -> GrantResult:
        now = self.clock()
        if now >= self.config.promo_cutoff:
            return GrantResult(granted=False, reason=GrantReason.AFTER_CUTOFF)

        self.identity.get_user(session, user_id)
        self.store.lock_account(session, user_id)
        if self.store.has_entry_of_type(session, user_id, EntryType.ONBOARDING_BONUS):
            return GrantResult(granted=False, reason=GrantReason.ALREADY_GRANTED)

        amount = self.config.onboarding_bonus_amount
        self.store.append_entry(
            session, user_id, EntryType.ONBOARDING_BONUS, amount,
            meta={"source": "onboarding", "grantedAt": now.isoformat()},
            created_at=now,
        )
        return GrantResult(granted=True, reason=GrantReason.GRANTED, amount=amount)

    def _grant_milestone(self, session: Session, user_id: str) -> GrantResult:
        now = self.clock()
        if now >= self.config.promo_cutoff:
            return GrantResult(granted=False, reason=GrantReason.AFTER_CUTOFF)

        self.identity.get_user(session, user_id)
        self.store.lock_account(session, user_id)
        if self.store.has_entry_of_type(session, user_id, EntryType.REFERRAL_MILESTONE):
            return GrantResult(granted=False, reason=GrantReason.ALREADY_GRANTED)

        referral_count = self.identity.count_referrals(session, user_id)
        if referral_count < self.config.referral_milestone_threshold:
            return GrantResult(granted=False, reason=GrantReason.NOT_ENOUGH_REFERRALS)

        amount = self.config.referral_milestone_amount
        self.store.append_entry(
            session, user_id, EntryType.REFERRAL_MILESTONE, amount,
            meta={"source": "referral_milestone", "referralCount": referral_count, "grantedAt": now.isoformat()},
            created_at=now,
        )
        return GrantResult(granted=True, reason=GrantReason.GRANTED, amount=amount)
