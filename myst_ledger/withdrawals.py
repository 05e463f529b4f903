import logging
from decimal import ROUND_DOWN, ROUND_UP, Decimal
from typing import Callable, Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from .config import LedgerConfig
from .db import Database, WithdrawalRequestRow
from .errors import (
    BelowMinimum,
    InsufficientBalance,
    InvalidWithdrawalTransition,
    WalletNotLinked,
    WithdrawalNotFound,
)
from .identity import IdentityStore
from .models import (
    TON_QUANT,
    EntryType,
    PoolId,
    WithdrawalQuote,
    WithdrawalRequest,
    WithdrawalStatus,
    quantize_myst,
)
from .store import LedgerStore


logger = logging.getLogger(__name__)


class WithdrawalProcessor:
    """MYST -> TON withdrawal requests.

    On request the user is debited the full amount; the fee goes to the
    treasury and the net amount to the burn pool. The TON amount and the
    TON/USD rate are frozen on the request row. Payment happens outside the
    ledger; rejection credits the user back and reverses both pool moves.
    """

    def __init__(
        self,
        db: Database,
        store: LedgerStore,
        identity: IdentityStore,
        price_feed,
        config: LedgerConfig,
        clock: Callable,
    ):
        self.db = db
        self.store = store
        self.identity = identity
        self.price_feed = price_feed
        self.config = config
        self.clock = clock

    def quote_fee(self, amount: Decimal) -> tuple[Decimal, Decimal, Decimal]:
        fee = quantize_myst(amount * self.config.withdrawal_fee_rate, rounding=ROUND_UP)
        net = amount - fee
        usd_net = net * self.config.usd_per_myst
        return fee, net, usd_net

    def request_withdrawal(
        self,
        user_id: str,
        amount: Decimal,
        external_address: Optional[str] = None,
    ) -> WithdrawalRequest:
        amount = Decimal(amount)
        if amount <= 0 or quantize_myst(amount) != amount:
            raise ValueError("Amount must be a positive MYST amount")

        address = external_address or self.db.run(
            lambda session: self.identity.ton_address(session, user_id), label="withdrawal address"
        )
        if not address:
            raise WalletNotLinked("TON wallet not linked")

        balance = self.db.run(lambda session: self.store.get_balance(session, user_id), label="balance")
        if balance < amount:
            raise InsufficientBalance(balance, amount)

        fee, net, usd_net = self.quote_fee(amount)
        if usd_net < self.config.withdrawal_min_usd:
            raise BelowMinimum(usd_net, self.config.withdrawal_min_usd)

        quote = self.price_feed.get_ton_price()
        ton_amount = (usd_net / quote.price_usd).quantize(TON_QUANT, rounding=ROUND_DOWN)

        withdrawal = self.db.run(
            lambda session: self._create(
                session, user_id, address, amount, fee, net, usd_net, ton_amount, quote.price_usd
            ),
            label="withdrawal request",
        )
        logger.info(
            "Withdrawal request created: %s, %s MYST -> %s TON @ $%s (%s)",
            withdrawal.id, amount, ton_amount, quote.price_usd, quote.source,
        )
        return withdrawal

    def _create(
        self,
        session: Session,
        user_id: str,
        address: str,
        amount: Decimal,
        fee: Decimal,
        net: Decimal,
        usd_net: Decimal,
        ton_amount: Decimal,
        ton_price: Decimal,
    ) -> WithdrawalRequest:
        self.store.lock_account(session, user_id)
        balance = self.store.get_balance(session, user_id)
        if balance < amount:
            raise InsufficientBalance(balance, amount)

        now = self.clock()
        row = WithdrawalRequestRow(
            user_id=user_id,
            external_address=address,
            amount_requested=amount,
            fee=fee,
            burn=net,
            usd_net=str(usd_net),
            external_amount=str(ton_amount),
            exchange_rate=str(ton_price),
            status=WithdrawalStatus.PENDING.value,
            created_at=now,
            updated_at=now,
        )
        session.add(row)
        session.flush()

        self.store.append_entry(
            session, user_id, EntryType.WITHDRAW_REQUEST, -amount,
            meta={"purpose": "withdrawal", "withdrawalId": row.id},
            created_at=now,
        )
        self.store.credit_pool(session, PoolId.TREASURY, fee)
        self.store.credit_pool(session, PoolId.BURN, net)
        return WithdrawalRequest.model_validate(row)

    def get(self, withdrawal_id: UUID) -> WithdrawalRequest:
        return self.db.run(
            lambda session: WithdrawalRequest.model_validate(self._load(session, withdrawal_id)),
            label="withdrawal lookup",
        )

    def list_for_user(self, user_id: str) -> list[WithdrawalRequest]:
        def _list(session: Session) -> list[WithdrawalRequest]:
            stmt = (
                select(WithdrawalRequestRow)
                .where(WithdrawalRequestRow.user_id == user_id)
                .order_by(WithdrawalRequestRow.created_at.desc())
            )
            return [WithdrawalRequest.model_validate(r) for r in session.scalars(stmt)]

        return self.db.run(_list, label="withdrawal list")

    def approve(self, withdrawal_id: UUID) -> WithdrawalRequest:
        def _approve(session: Session) -> WithdrawalRequest:
            row = self._load(session, withdrawal_id, for_update=True)
            if not WithdrawalRequest.model_validate(row).can_approve():
                raise InvalidWithdrawalTransition(f"Cannot approve withdrawal in {row.status} state")
            row.status = WithdrawalStatus.APPROVED.value
            row.updated_at = self.clock()
            return WithdrawalRequest.model_validate(row)

        withdrawal = self.db.run(_approve, label="withdrawal approve")
        logger.info("Withdrawal %s approved", withdrawal_id)
        return withdrawal

    def mark_paid(self, withdrawal_id: UUID, tx_hash: str) -> WithdrawalRequest:
        def _pay(session: Session) -> WithdrawalRequest:
            row = self._load(session, withdrawal_id, for_update=True)
            if not WithdrawalRequest.model_validate(row).can_pay():
                raise InvalidWithdrawalTransition(f"Withdrawal already {row.status}")
            now = self.clock()
            row.status = WithdrawalStatus.PAID.value
            row.tx_hash = tx_hash
            row.paid_at = now
            row.updated_at = now
            return WithdrawalRequest.model_validate(row)

        withdrawal = self.db.run(_pay, label="withdrawal paid")
        logger.info("Withdrawal %s marked as paid (%s)", withdrawal_id, tx_hash)
        return withdrawal

    def reject(self, withdrawal_id: UUID, reason: str) -> WithdrawalRequest:
        def _reject(session: Session) -> WithdrawalRequest:
            row = self._load(session, withdrawal_id, for_update=True)
            if not WithdrawalRequest.model_validate(row).can_reject():
                raise InvalidWithdrawalTransition(f"Withdrawal already {row.status}")
            now = self.clock()
            self.store.lock_account(session, row.user_id)
            self.store.append_entry(
                session, row.user_id, EntryType.WITHDRAW_REFUND, row.amount_requested,
                meta={"withdrawalId": row.id, "reason": reason},
                created_at=now,
            )
            if row.fee > 0:
                self.store.debit_pool(session, PoolId.TREASURY, row.fee)
            if row.burn > 0:
                self.store.debit_pool(session, PoolId.BURN, row.burn)
            row.status = WithdrawalStatus.REJECTED.value
            row.rejection_reason = reason
            row.updated_at = now
            return WithdrawalRequest.model_validate(row)

        withdrawal = self.db.run(_reject, label="withdrawal reject")
        logger.info("Withdrawal %s rejected: %s", withdrawal_id, reason)
        return withdrawal

    def refresh_quote(self, withdrawal_id: UUID) -> WithdrawalQuote:
        """Preview the TON amount at today's rate; the stored snapshot is left as is."""
        withdrawal = self.get(withdrawal_id)
        current_rate = self.price_feed.get_ton_price().price_usd
        current_amount = (withdrawal.usd_net / current_rate).quantize(TON_QUANT, rounding=ROUND_DOWN)
        return WithdrawalQuote(
            withdrawal_id=withdrawal.id,
            original_rate=withdrawal.exchange_rate,
            original_amount=withdrawal.external_amount,
            current_rate=current_rate,
            current_amount=current_amount,
            rate_change_pct=(current_rate - withdrawal.exchange_rate) / withdrawal.exchange_rate * 100,
            amount_diff=current_amount - withdrawal.external_amount,
        )

    def _load(self, session: Session, withdrawal_id: UUID, for_update: bool = False) -> WithdrawalRequestRow:
        stmt = select(WithdrawalRequestRow).where(WithdrawalRequestRow.id == withdrawal_id)
        if for_update:
            stmt = stmt.with_for_update()
        row = session.scalars(stmt).first()
        if row is None:
            raise WithdrawalNotFound(f"Withdrawal {withdrawal_id} not found")
        return row
