from datetime import datetime
from decimal import ROUND_DOWN, Decimal
from enum import Enum
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


MYST_DECIMALS = 8
MYST_QUANT = Decimal(1).scaleb(-MYST_DECIMALS)
TON_QUANT = Decimal(1).scaleb(-9)


def quantize_myst(value, rounding: str = ROUND_DOWN) -> Decimal:
    return Decimal(value).quantize(MYST_QUANT, rounding=rounding)


class EntryType(str, Enum):
    # external funding
    TON_DEPOSIT = "ton_deposit"
    ADMIN_GRANT = "admin_grant"
    STARS_CONVERSION = "stars_conversion"
    # promotional
    ONBOARDING_BONUS = "onboarding_bonus"
    REFERRAL_MILESTONE = "referral_milestone"
    # earnings
    WHEEL_PRIZE = "wheel_prize"
    PREDICTION_WIN = "prediction_win"
    REFERRAL_REWARD_L1 = "referral_reward_l1"
    REFERRAL_REWARD_L2 = "referral_reward_l2"
    # spending
    SPEND_BET = "spend_bet"
    SPEND_BOOST = "spend_boost"
    SPEND_CAMPAIGN = "spend_campaign"
    # withdrawals
    WITHDRAW_REQUEST = "withdraw_request"
    WITHDRAW_REFUND = "withdraw_refund"


FUNDING_TYPES = (EntryType.TON_DEPOSIT, EntryType.ADMIN_GRANT, EntryType.STARS_CONVERSION)
SPEND_TYPES = (EntryType.SPEND_BET, EntryType.SPEND_BOOST, EntryType.SPEND_CAMPAIGN)
REFERRAL_REWARD_TYPES = (EntryType.REFERRAL_REWARD_L1, EntryType.REFERRAL_REWARD_L2)


class PoolId(str, Enum):
    TREASURY = "treasury"
    REFERRAL = "referral"
    WHEEL = "wheel"
    LEADERBOARD = "leaderboard"
    BURN = "burn"


class WithdrawalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    PAID = "paid"


class PrizeType(str, Enum):
    AXP = "axp"
    MYST = "myst"


class GrantReason(str, Enum):
    GRANTED = "granted"
    ALREADY_GRANTED = "already-granted"
    AFTER_CUTOFF = "after-cutoff"
    NOT_ENOUGH_REFERRALS = "not-enough-referrals"


class LedgerEntry(BaseModel):
    id: UUID
    user_id: str
    entry_type: EntryType
    amount: Decimal
    meta: dict = Field(default_factory=dict)
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class PoolBalance(BaseModel):
    pool_id: PoolId
    balance: Decimal
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class ReferralEdge(BaseModel):
    user_id: str
    referrer_level1_id: Optional[str] = None
    referrer_level2_id: Optional[str] = None


class ReferralEvent(BaseModel):
    id: UUID
    user_id: str
    referrer_level1_id: Optional[str] = None
    reward_level1: Decimal
    referrer_level2_id: Optional[str] = None
    reward_level2: Decimal
    amount_spent: Decimal
    spend_type: EntryType
    reference_id: Optional[str] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class WithdrawalRequest(BaseModel):
    id: UUID
    user_id: str
    external_address: str
    amount_requested: Decimal
    fee: Decimal
    burn: Decimal
    usd_net: Decimal
    external_amount: Decimal
    exchange_rate: Decimal
    status: WithdrawalStatus
    tx_hash: Optional[str] = None
    rejection_reason: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    paid_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)

    def can_approve(self) -> bool:
        return self.status == WithdrawalStatus.PENDING

    def can_pay(self) -> bool:
        return self.status in (WithdrawalStatus.PENDING, WithdrawalStatus.APPROVED)

    def can_reject(self) -> bool:
        return self.status in (WithdrawalStatus.PENDING, WithdrawalStatus.APPROVED)


class WheelPrize(BaseModel):
    type: PrizeType
    label: str
    myst: Decimal = Decimal("0")
    axp: int = 0
    weight: int = Field(default=0, ge=0)

    model_config = ConfigDict(frozen=True)


class WheelSpin(BaseModel):
    id: UUID
    user_id: str
    prize_label: str
    prize_type: PrizeType
    myst_awarded: Decimal
    xp_awarded: int
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class SpendSplits(BaseModel):
    leaderboard: Decimal
    referral: Decimal
    wheel: Decimal
    treasury: Decimal


class ReferralRewards(BaseModel):
    level1_user_id: Optional[str] = None
    level1_amount: Decimal = Decimal("0")
    level2_user_id: Optional[str] = None
    level2_amount: Decimal = Decimal("0")


class SpendResult(BaseModel):
    user_id: str
    spent: Decimal
    spend_type: EntryType
    reference_id: Optional[str] = None
    splits: SpendSplits
    pool_deltas: dict[PoolId, Decimal]
    referral_rewards: ReferralRewards
    new_balance: Decimal


class GrantResult(BaseModel):
    granted: bool
    reason: GrantReason
    amount: Optional[Decimal] = None


class PredictionPayout(BaseModel):
    payout: Decimal
    fee: Decimal
    win_pool: Decimal


class WinningStake(BaseModel):
    user_id: str
    stake: Decimal = Field(..., ge=0)
    bet_id: Optional[str] = None


class SettlementPayout(BaseModel):
    user_id: str
    stake: Decimal
    payout: Decimal
    bet_id: Optional[str] = None


class SettlementResult(BaseModel):
    market_id: str
    fee: Decimal
    win_pool: Decimal
    total_paid: Decimal
    payouts: list[SettlementPayout]


class WithdrawalQuote(BaseModel):
    withdrawal_id: UUID
    original_rate: Decimal
    original_amount: Decimal
    current_rate: Decimal
    current_amount: Decimal
    rate_change_pct: Decimal
    amount_diff: Decimal


class SpinResult(BaseModel):
    prize: WheelPrize
    downgraded: bool = False
    spins_remaining: int
    wheel_pool_balance: Decimal


class UserBalance(BaseModel):
    user_id: str
    current_balance: Decimal
    total_entries: int
    last_transaction_at: Optional[datetime] = None


class LedgerHistoryResponse(BaseModel):
    user_id: str
    entries: list[LedgerEntry]
    total_count: int
    current_balance: Decimal


class SpenderRow(BaseModel):
    user_id: str
    total_spent: Decimal


class ReferrerRow(BaseModel):
    user_id: str
    total_rewards: Decimal


class PoolTransfer(BaseModel):
    from_pool: PoolId
    to_pool: PoolId
    amount: Decimal
    new_from_balance: Decimal
    new_to_balance: Decimal


# request bodies for the HTTP adapter

class SpendRequest(BaseModel):
    amount: Decimal = Field(..., gt=0)
    spend_type: EntryType = EntryType.SPEND_BET
    reference_id: Optional[str] = None

    model_config = ConfigDict(json_schema_extra={
        "example": {"amount": "10", "spend_type": "spend_bet", "reference_id": "prediction-42"}
    })


class CreditRequest(BaseModel):
    amount: Decimal = Field(..., gt=0)
    entry_type: EntryType = EntryType.ADMIN_GRANT
    meta: dict = Field(default_factory=dict)


class WithdrawRequest(BaseModel):
    amount: Decimal = Field(..., gt=0)
    external_address: Optional[str] = None


class MarkPaidRequest(BaseModel):
    tx_hash: str


class RejectWithdrawalRequest(BaseModel):
    reason: str = Field(..., description="Reason for rejection")


class SettleRequest(BaseModel):
    winning_stakes: list[WinningStake]
    winning_side_total: Decimal = Field(..., ge=0)
    losing_side_total: Decimal = Field(..., ge=0)
    fee_rate: Optional[Decimal] = None


class TransferRequest(BaseModel):
    from_pool: PoolId
    to_pool: PoolId
    amount: Decimal = Field(..., gt=0)


class ApplyReferralRequest(BaseModel):
    referral_code: str


class RegisterUserRequest(BaseModel):
    user_id: str
    telegram_id: Optional[str] = None
    username: Optional[str] = None
    ton_address: Optional[str] = None


class RegisteredUser(BaseModel):
    user_id: str
    referral_code: str


class LinkWalletRequest(BaseModel):
    ton_address: str
