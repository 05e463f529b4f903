import logging
import secrets
import string
from typing import Optional

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from .db import UserRow, utcnow
from .errors import ReferralError, UserNotFound
from .models import ReferralEdge


logger = logging.getLogger(__name__)

_CODE_ALPHABET = string.ascii_uppercase + string.digits


def generate_referral_code(telegram_id: str) -> str:
    suffix = "".join(secrets.choice(_CODE_ALPHABET) for _ in range(4))
    return f"AKARI_{telegram_id[-6:]}_{suffix}"


class IdentityStore:
    """The slice of the user directory the ledger depends on.

    Referrer pointers are written once; the referral edge is the direct
    referrer plus that referrer's own referrer.
    """

    def register_user(
        self,
        session: Session,
        user_id: str,
        telegram_id: Optional[str] = None,
        username: Optional[str] = None,
        ton_address: Optional[str] = None,
    ) -> UserRow:
        user = session.get(UserRow, user_id)
        if user is not None:
            return user
        user = UserRow(
            id=user_id,
            telegram_id=telegram_id,
            username=username,
            referral_code=generate_referral_code(telegram_id or user_id),
            ton_address=ton_address,
            xp=0,
            created_at=utcnow(),
        )
        session.add(user)
        session.flush()
        return user

    def get_user(self, session: Session, user_id: str) -> UserRow:
        user = session.get(UserRow, user_id)
        if user is None:
            raise UserNotFound(f"User {user_id} not found")
        return user

    def referral_edge(self, session: Session, user_id: str) -> ReferralEdge:
        user = self.get_user(session, user_id)
        if user.referrer_id is None:
            return ReferralEdge(user_id=user_id)
        level2 = session.scalar(select(UserRow.referrer_id).where(UserRow.id == user.referrer_id))
        if level2 == user_id:
            level2 = None
        return ReferralEdge(user_id=user_id, referrer_level1_id=user.referrer_id, referrer_level2_id=level2)

    def count_referrals(self, session: Session, user_id: str) -> int:
        stmt = select(func.count()).select_from(UserRow).where(UserRow.referrer_id == user_id)
        return session.scalar(stmt)

    def apply_referral_code(self, session: Session, user_id: str, referral_code: str) -> str:
        """Point the user at the owner of ``referral_code``; returns the referrer id."""
        referrer = session.scalars(select(UserRow).where(UserRow.referral_code == referral_code)).first()
        if referrer is None:
            raise ReferralError("Invalid referral code")
        if referrer.id == user_id:
            raise ReferralError("Cannot refer yourself")
        if referrer.referrer_id == user_id:
            raise ReferralError("Referral would create a cycle")
        self.get_user(session, user_id)

        result = session.execute(
            update(UserRow)
            .where(UserRow.id == user_id, UserRow.referrer_id.is_(None))
            .values(referrer_id=referrer.id)
        )
        if result.rowcount != 1:
            raise ReferralError("Already have a referrer")
        logger.info("User %s referred by %s", user_id, referrer.id)
        return referrer.id

    def ton_address(self, session: Session, user_id: str) -> Optional[str]:
        return self.get_user(session, user_id).ton_address

    def link_ton_address(self, session: Session, user_id: str, address: str) -> None:
        self.get_user(session, user_id).ton_address = address
        session.flush()

    def award_xp(self, session: Session, user_id: str, xp: int) -> None:
        if xp <= 0:
            raise ValueError("XP awards must be positive")
        result = session.execute(update(UserRow).where(UserRow.id == user_id).values(xp=UserRow.xp + xp))
        if result.rowcount != 1:
            raise UserNotFound(f"User {user_id} not found")

    def xp_of(self, session: Session, user_id: str) -> int:
        return self.get_user(session, user_id).xp
