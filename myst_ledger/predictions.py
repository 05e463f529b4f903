import logging
from decimal import ROUND_UP, Decimal
from typing import Callable, Optional

from sqlalchemy.orm import Session

from .config import LedgerConfig
from .db import Database, PredictionSettlementRow
from .errors import MarketAlreadySettled
from .models import (
    EntryType,
    PredictionPayout,
    SettlementPayout,
    SettlementResult,
    WinningStake,
    quantize_myst,
)
from .store import LedgerStore


logger = logging.getLogger(__name__)


def calculate_payout(
    user_stake: Decimal,
    winning_side_total: Decimal,
    losing_side_total: Decimal,
    fee_rate: Decimal = Decimal("0.08"),
) -> PredictionPayout:
    """Pari-mutuel payout for one winning stake.

    The fee is taken from the whole pot (both sides). Winners share what is
    left in proportion to their stake. A market with nothing on the winning
    side pays nothing but still reports the fee.
    """
    user_stake = Decimal(user_stake)
    winning_side_total = Decimal(winning_side_total)
    losing_side_total = Decimal(losing_side_total)

    total_pool = winning_side_total + losing_side_total
    fee = quantize_myst(total_pool * Decimal(fee_rate), rounding=ROUND_UP)
    win_pool = total_pool - fee

    if winning_side_total <= 0:
        return PredictionPayout(payout=Decimal("0"), fee=fee, win_pool=win_pool)

    payout = quantize_myst(user_stake * win_pool / winning_side_total)
    return PredictionPayout(payout=payout, fee=fee, win_pool=win_pool)


class PredictionSettlement:
    def __init__(self, db: Database, store: LedgerStore, config: LedgerConfig, clock: Callable):
        self.db = db
        self.store = store
        self.config = config
        self.clock = clock

    def settle(
        self,
        market_id: str,
        winning_stakes: list[WinningStake],
        winning_side_total: Decimal,
        losing_side_total: Decimal,
        fee_rate: Optional[Decimal] = None,
    ) -> SettlementResult:
        fee_rate = self.config.prediction_fee_rate if fee_rate is None else Decimal(fee_rate)
        if not Decimal("0") <= fee_rate < Decimal("1"):
            raise ValueError("fee_rate must be in [0, 1)")
        stakes = [s if isinstance(s, WinningStake) else WinningStake.model_validate(s) for s in winning_stakes]
        if sum((s.stake for s in stakes), Decimal("0")) > Decimal(winning_side_total):
            raise ValueError("Winning stakes exceed the winning side total")

        result = self.db.run(
            lambda session: self._settle(
                session, market_id, stakes, Decimal(winning_side_total), Decimal(losing_side_total), fee_rate
            ),
            label="prediction settlement",
        )
        logger.info(
            "Settled market %s: fee %s, win pool %s, paid %s MYST to %d winner(s)",
            market_id, result.fee, result.win_pool, result.total_paid, len(result.payouts),
        )
        return result

    def _settle(
        self,
        session: Session,
        market_id: str,
        stakes: list[WinningStake],
        winning_side_total: Decimal,
        losing_side_total: Decimal,
        fee_rate: Decimal,
    ) -> SettlementResult:
        if session.get(PredictionSettlementRow, market_id) is not None:
            raise MarketAlreadySettled(f"Market {market_id} is already settled")

        now = self.clock()
        summary = calculate_payout(Decimal("0"), winning_side_total, losing_side_total, fee_rate)
        payouts: list[SettlementPayout] = []
        total_paid = Decimal("0")

        for stake in stakes:
            outcome = calculate_payout(stake.stake, winning_side_total, losing_side_total, fee_rate)
            if outcome.payout <= 0:
                continue
            self.store.append_entry(
                session, stake.user_id, EntryType.PREDICTION_WIN, outcome.payout,
                meta={
                    "predictionId": market_id,
                    "betId": stake.bet_id,
                    "userStake": stake.stake,
                    "winPool": outcome.win_pool,
                    "winningSideTotal": winning_side_total,
                },
                created_at=now,
            )
            payouts.append(SettlementPayout(
                user_id=stake.user_id, stake=stake.stake, payout=outcome.payout, bet_id=stake.bet_id
            ))
            total_paid += outcome.payout

        session.add(PredictionSettlementRow(
            market_id=market_id,
            winning_side_total=winning_side_total,
            losing_side_total=losing_side_total,
            fee_rate=str(fee_rate),
            fee=summary.fee,
            win_pool=summary.win_pool,
            total_paid=total_paid,
            created_at=now,
        ))
        session.flush()

        return SettlementResult(
            market_id=market_id,
            fee=summary.fee,
            win_pool=summary.win_pool,
            total_paid=total_paid,
            payouts=payouts,
        )
