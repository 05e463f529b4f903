import json
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from .db import LedgerAccountRow, LedgerEntryRow, PoolAccountRow, utcnow
from .errors import PoolInsufficient
from .models import (
    REFERRAL_REWARD_TYPES,
    SPEND_TYPES,
    EntryType,
    LedgerEntry,
    PoolBalance,
    PoolId,
    ReferrerRow,
    SpenderRow,
    quantize_myst,
)


def _jsonable(meta: Optional[dict]) -> dict:
    return json.loads(json.dumps(meta or {}, default=str))


class LedgerStore:
    """Append-only MYST ledger and the shared pool counters.

    All methods take the caller's session, so reads see every write made
    earlier in the same transaction and writes commit or roll back with it.
    """

    # -- per-user lock ---------------------------------------------------

    def lock_account(self, session: Session, user_id: str) -> None:
        stmt = select(LedgerAccountRow).where(LedgerAccountRow.user_id == user_id).with_for_update()
        if session.scalars(stmt).first() is None:
            session.add(LedgerAccountRow(user_id=user_id, created_at=utcnow()))
            session.flush()

    # -- entries ---------------------------------------------------------

    def get_balance(self, session: Session, user_id: str) -> Decimal:
        stmt = select(func.sum(LedgerEntryRow.amount)).where(LedgerEntryRow.user_id == user_id)
        balance = session.scalar(stmt)
        return balance if balance is not None else Decimal("0")

    def append_entry(
        self,
        session: Session,
        user_id: str,
        entry_type: EntryType,
        amount: Decimal,
        meta: Optional[dict] = None,
        created_at: Optional[datetime] = None,
    ) -> LedgerEntry:
        amount = quantize_myst(amount)
        if amount == 0:
            raise ValueError("Ledger entries cannot have a zero amount")
        row = LedgerEntryRow(
            user_id=user_id,
            entry_type=EntryType(entry_type).value,
            amount=amount,
            meta=_jsonable(meta),
            created_at=created_at or utcnow(),
        )
        session.add(row)
        session.flush()
        return LedgerEntry.model_validate(row)

    def has_entry_of_type(self, session: Session, user_id: str, entry_type: EntryType) -> bool:
        stmt = select(LedgerEntryRow.id).where(
            LedgerEntryRow.user_id == user_id,
            LedgerEntryRow.entry_type == EntryType(entry_type).value,
        ).limit(1)
        return session.scalars(stmt).first() is not None

    def entries_of_type(self, session: Session, user_id: str, entry_type: EntryType) -> list[LedgerEntry]:
        stmt = select(LedgerEntryRow).where(
            LedgerEntryRow.user_id == user_id,
            LedgerEntryRow.entry_type == EntryType(entry_type).value,
        ).order_by(LedgerEntryRow.created_at)
        return [LedgerEntry.model_validate(r) for r in session.scalars(stmt)]

    def count_entries(self, session: Session, user_id: str) -> int:
        stmt = select(func.count()).select_from(LedgerEntryRow).where(LedgerEntryRow.user_id == user_id)
        return session.scalar(stmt)

    def last_entry_at(self, session: Session, user_id: str) -> Optional[datetime]:
        stmt = select(LedgerEntryRow.created_at).where(
            LedgerEntryRow.user_id == user_id
        ).order_by(LedgerEntryRow.created_at.desc()).limit(1)
        return session.scalars(stmt).first()

    def history(self, session: Session, user_id: str, limit: int = 50, offset: int = 0) -> list[LedgerEntry]:
        stmt = (
            select(LedgerEntryRow)
            .where(LedgerEntryRow.user_id == user_id)
            .order_by(LedgerEntryRow.created_at.desc(), LedgerEntryRow.id)
            .limit(limit)
            .offset(offset)
        )
        return [LedgerEntry.model_validate(r) for r in session.scalars(stmt)]

    # -- pools -----------------------------------------------------------

    def pool_balance(self, session: Session, pool_id: PoolId) -> Decimal:
        balance = session.scalar(select(PoolAccountRow.balance).where(PoolAccountRow.pool_id == PoolId(pool_id).value))
        return balance if balance is not None else Decimal("0")

    def pool_balances(self, session: Session) -> list[PoolBalance]:
        rows = session.scalars(select(PoolAccountRow).order_by(PoolAccountRow.pool_id))
        return [PoolBalance.model_validate(r) for r in rows]

    def credit_pool(self, session: Session, pool_id: PoolId, delta: Decimal) -> None:
        delta = quantize_myst(delta)
        if delta < 0:
            raise ValueError("Pool credits must be non-negative")
        if delta == 0:
            return
        pool_key = PoolId(pool_id).value
        result = session.execute(
            update(PoolAccountRow)
            .where(PoolAccountRow.pool_id == pool_key)
            .values(balance=PoolAccountRow.balance + delta, updated_at=utcnow())
        )
        if result.rowcount == 0:
            session.add(PoolAccountRow(pool_id=pool_key, balance=delta, updated_at=utcnow()))
            session.flush()

    def debit_pool(self, session: Session, pool_id: PoolId, delta: Decimal) -> None:
        delta = quantize_myst(delta)
        if delta <= 0:
            raise ValueError("Pool debits must be positive")
        pool_key = PoolId(pool_id).value
        result = session.execute(
            update(PoolAccountRow)
            .where(PoolAccountRow.pool_id == pool_key, PoolAccountRow.balance >= delta)
            .values(balance=PoolAccountRow.balance - delta, updated_at=utcnow())
        )
        if result.rowcount != 1:
            raise PoolInsufficient(pool_key, self.pool_balance(session, pool_id), delta)

    # -- leaderboards ----------------------------------------------------

    def top_spenders(self, session: Session, start: datetime, end: datetime, limit: int = 10) -> list[SpenderRow]:
        total = func.sum(LedgerEntryRow.amount).label("total")
        stmt = (
            select(LedgerEntryRow.user_id, total)
            .where(
                LedgerEntryRow.entry_type.in_([t.value for t in SPEND_TYPES]),
                LedgerEntryRow.amount < 0,
                LedgerEntryRow.created_at >= start,
                LedgerEntryRow.created_at <= end,
            )
            .group_by(LedgerEntryRow.user_id)
            .order_by(total.asc(), LedgerEntryRow.user_id)
            .limit(limit)
        )
        return [SpenderRow(user_id=user_id, total_spent=abs(amount)) for user_id, amount in session.execute(stmt)]

    def top_referrers(self, session: Session, start: datetime, end: datetime, limit: int = 10) -> list[ReferrerRow]:
        total = func.sum(LedgerEntryRow.amount).label("total")
        stmt = (
            select(LedgerEntryRow.user_id, total)
            .where(
                LedgerEntryRow.entry_type.in_([t.value for t in REFERRAL_REWARD_TYPES]),
                LedgerEntryRow.amount > 0,
                LedgerEntryRow.created_at >= start,
                LedgerEntryRow.created_at <= end,
            )
            .group_by(LedgerEntryRow.user_id)
            .order_by(total.desc(), LedgerEntryRow.user_id)
            .limit(limit)
        )
        return [ReferrerRow(user_id=user_id, total_rewards=amount) for user_id, amount in session.execute(stmt)]
