"""
Relational schema and transaction runner.

Amounts are stored as integer base units so SQL aggregation stays exact;
timestamps are stored as naive UTC and handed back timezone-aware.

Every state-changing ledger operation goes through ``Database.run``: one
transaction per attempt, retried with backoff when the database reports
lock contention or a write conflict. On SQLite each transaction starts with
``BEGIN IMMEDIATE`` so writers are serialized; on PostgreSQL the per-user
``ledger_accounts`` row is locked with ``SELECT ... FOR UPDATE``.
"""

import logging
import random
import time
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, Optional, TypeVar

from sqlalchemy import (
    JSON, BigInteger, DateTime, ForeignKey, Index, Integer, String, Uuid,
    create_engine, event, select,
)
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool
from sqlalchemy.types import TypeDecorator

from .errors import TransientLedgerError
from .models import MYST_DECIMALS, PoolId, quantize_myst


logger = logging.getLogger(__name__)

T = TypeVar("T")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MystAmount(TypeDecorator):
    impl = BigInteger
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return int(quantize_myst(value).scaleb(MYST_DECIMALS))

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return Decimal(int(value)).scaleb(-MYST_DECIMALS)


class UtcDateTime(TypeDecorator):
    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError("naive datetime passed to a UTC column")
        return value.astimezone(timezone.utc).replace(tzinfo=None)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return value.replace(tzinfo=timezone.utc)


class Base(DeclarativeBase):
    pass


class UserRow(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    telegram_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    username: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    referral_code: Mapped[Optional[str]] = mapped_column(String(64), unique=True, nullable=True)
    referrer_id: Mapped[Optional[str]] = mapped_column(ForeignKey("users.id"), nullable=True, index=True)
    ton_address: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    xp: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(UtcDateTime, default=utcnow)


class LedgerAccountRow(Base):
    """Per-user lock row; holds no balance."""

    __tablename__ = "ledger_accounts"

    user_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    created_at: Mapped[datetime] = mapped_column(UtcDateTime, default=utcnow)


class LedgerEntryRow(Base):
    __tablename__ = "ledger_entries"
    __table_args__ = (
        Index("ix_ledger_entries_user_type_time", "user_id", "entry_type", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[str] = mapped_column(String(64), index=True)
    entry_type: Mapped[str] = mapped_column(String(32))
    amount: Mapped[Decimal] = mapped_column(MystAmount)  # +credit / -debit
    meta: Mapped[dict] = mapped_column(JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(UtcDateTime, default=utcnow, index=True)


class PoolAccountRow(Base):
    __tablename__ = "pool_accounts"

    pool_id: Mapped[str] = mapped_column(String(32), primary_key=True)
    balance: Mapped[Decimal] = mapped_column(MystAmount, default=Decimal("0"))
    updated_at: Mapped[datetime] = mapped_column(UtcDateTime, default=utcnow)


class ReferralEventRow(Base):
    __tablename__ = "referral_events"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[str] = mapped_column(String(64), index=True)
    referrer_level1_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    reward_level1: Mapped[Decimal] = mapped_column(MystAmount)
    referrer_level2_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    reward_level2: Mapped[Decimal] = mapped_column(MystAmount)
    amount_spent: Mapped[Decimal] = mapped_column(MystAmount)
    spend_type: Mapped[str] = mapped_column(String(32))
    reference_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UtcDateTime, default=utcnow)


class WithdrawalRequestRow(Base):
    __tablename__ = "withdrawal_requests"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[str] = mapped_column(String(64), index=True)
    external_address: Mapped[str] = mapped_column(String(128))
    amount_requested: Mapped[Decimal] = mapped_column(MystAmount)
    fee: Mapped[Decimal] = mapped_column(MystAmount)
    burn: Mapped[Decimal] = mapped_column(MystAmount)
    usd_net: Mapped[str] = mapped_column(String(40))
    external_amount: Mapped[str] = mapped_column(String(40))
    exchange_rate: Mapped[str] = mapped_column(String(40))
    status: Mapped[str] = mapped_column(String(16), index=True)
    tx_hash: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    rejection_reason: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UtcDateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UtcDateTime, default=utcnow)
    paid_at: Mapped[Optional[datetime]] = mapped_column(UtcDateTime, nullable=True)


class WheelSpinRow(Base):
    __tablename__ = "wheel_spins"
    __table_args__ = (Index("ix_wheel_spins_user_time", "user_id", "created_at"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[str] = mapped_column(String(64))
    prize_label: Mapped[str] = mapped_column(String(64))
    prize_type: Mapped[str] = mapped_column(String(8))
    myst_awarded: Mapped[Decimal] = mapped_column(MystAmount, default=Decimal("0"))
    xp_awarded: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(UtcDateTime, default=utcnow)


class PredictionSettlementRow(Base):
    __tablename__ = "prediction_settlements"

    market_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    winning_side_total: Mapped[Decimal] = mapped_column(MystAmount)
    losing_side_total: Mapped[Decimal] = mapped_column(MystAmount)
    fee_rate: Mapped[str] = mapped_column(String(16))
    fee: Mapped[Decimal] = mapped_column(MystAmount)
    win_pool: Mapped[Decimal] = mapped_column(MystAmount)
    total_paid: Mapped[Decimal] = mapped_column(MystAmount)
    created_at: Mapped[datetime] = mapped_column(UtcDateTime, default=utcnow)


def _is_sqlite(url: str) -> bool:
    return url.startswith("sqlite")


def _is_conflict(exc: DBAPIError) -> bool:
    if isinstance(exc, IntegrityError):
        return True
    msg = str(exc.orig).lower()
    if "database is locked" in msg or "database is busy" in msg:
        return True
    # postgres: serialization_failure / deadlock_detected
    return getattr(exc.orig, "pgcode", None) in ("40001", "40P01")


class Database:
    def __init__(
        self,
        url: str,
        *,
        max_retries: int = 8,
        backoff_base: float = 0.005,
        backoff_max: float = 0.25,
        echo: bool = False,
    ):
        self.url = url
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max

        if _is_sqlite(url):
            kwargs = {"connect_args": {"check_same_thread": False, "timeout": 30}}
            if url in ("sqlite://", "sqlite:///:memory:"):
                kwargs["poolclass"] = StaticPool
            self.engine = create_engine(url, echo=echo, **kwargs)
            self._install_sqlite_hooks()
        else:
            self.engine = create_engine(url, echo=echo, pool_pre_ping=True)

        self.session_factory = sessionmaker(self.engine, expire_on_commit=False)

    @property
    def is_sqlite(self) -> bool:
        return _is_sqlite(self.url)

    def _install_sqlite_hooks(self) -> None:
        @event.listens_for(self.engine, "connect")
        def _on_connect(dbapi_connection, connection_record):
            # take over transaction control from pysqlite
            dbapi_connection.isolation_level = None
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.execute("PRAGMA busy_timeout=30000")
            cursor.close()

        @event.listens_for(self.engine, "begin")
        def _on_begin(conn):
            conn.exec_driver_sql("BEGIN IMMEDIATE")

    def create_all(self) -> None:
        Base.metadata.create_all(self.engine)
        with self.session_factory.begin() as session:
            existing = set(session.scalars(select(PoolAccountRow.pool_id)))
            for pool_id in PoolId:
                if pool_id.value not in existing:
                    session.add(PoolAccountRow(pool_id=pool_id.value, balance=Decimal("0"), updated_at=utcnow()))

    def dispose(self) -> None:
        self.engine.dispose()

    def run(self, fn: Callable[[Session], T], *, label: str = "ledger operation") -> T:
        """Run ``fn`` inside one transaction, retrying write conflicts.

        Domain errors raised by ``fn`` roll the transaction back and propagate
        unchanged. Database failures that persist past ``max_retries`` surface
        as ``TransientLedgerError``.
        """
        attempt = 0
        while True:
            try:
                with self.session_factory.begin() as session:
                    return fn(session)
            except DBAPIError as e:
                attempt += 1
                if not _is_conflict(e) or attempt >= self.max_retries:
                    logger.error("%s failed after %d attempt(s): %s", label, attempt, e.orig)
                    raise TransientLedgerError(f"{label} failed: {e.orig}") from e
                sleep_s = min(self.backoff_max, self.backoff_base * (2.0 ** min(attempt, 8)))
                sleep_s *= 0.5 + random.random()
                logger.warning("%s conflicted (attempt %d), retrying in %.3fs", label, attempt, sleep_s)
                time.sleep(sleep_s)
