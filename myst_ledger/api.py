from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import Optional
from uuid import UUID

from fastapi import Depends, FastAPI, HTTPException, status
from fastapi.middleware.cors import CORSMiddleware

from .errors import (
    InsufficientBalance,
    InvalidWithdrawalTransition,
    LedgerError,
    MarketAlreadySettled,
    PoolInsufficient,
    QuotaExceeded,
    TransientLedgerError,
    UserNotFound,
    WithdrawalNotFound,
)
from .models import (
    ApplyReferralRequest,
    CreditRequest,
    GrantResult,
    LedgerEntry,
    LedgerHistoryResponse,
    LinkWalletRequest,
    MarkPaidRequest,
    PoolBalance,
    PoolId,
    PoolTransfer,
    ReferrerRow,
    RegisteredUser,
    RegisterUserRequest,
    RejectWithdrawalRequest,
    SettleRequest,
    SettlementResult,
    SpenderRow,
    SpendRequest,
    SpendResult,
    SpinResult,
    TransferRequest,
    UserBalance,
    WithdrawalQuote,
    WithdrawalRequest,
    WithdrawRequest,
)
from .service import LedgerService

app = FastAPI(
    title="MYST Ledger API",
    description="Append-only MYST token ledger with spend distribution, promo grants, predictions, withdrawals and the wheel",
    version="1.0.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@lru_cache
def get_ledger_service() -> LedgerService:
    return LedgerService.from_env()


def _http_error(e: Exception) -> HTTPException:
    if isinstance(e, InsufficientBalance):
        code = status.HTTP_402_PAYMENT_REQUIRED
    elif isinstance(e, (UserNotFound, WithdrawalNotFound)):
        code = status.HTTP_404_NOT_FOUND
    elif isinstance(e, (MarketAlreadySettled, InvalidWithdrawalTransition, PoolInsufficient)):
        code = status.HTTP_409_CONFLICT
    elif isinstance(e, QuotaExceeded):
        code = status.HTTP_429_TOO_MANY_REQUESTS
    elif isinstance(e, TransientLedgerError):
        code = status.HTTP_503_SERVICE_UNAVAILABLE
    else:
        # BelowMinimum, WalletNotLinked, ReferralError, ValueError
        code = status.HTTP_400_BAD_REQUEST
    return HTTPException(status_code=code, detail=str(e))


def _utc(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


@app.get("/health", tags=["System"])
def health_check():
    return {"status": "healthy", "service": "myst-ledger"}


# -- users ---------------------------------------------------------------

@app.post("/users", response_model=RegisteredUser, status_code=status.HTTP_201_CREATED, tags=["Users"])
def register_user(request: RegisterUserRequest, service: LedgerService = Depends(get_ledger_service)):
    try:
        code = service.register_user(
            request.user_id,
            telegram_id=request.telegram_id,
            username=request.username,
            ton_address=request.ton_address,
        )
    except LedgerError as e:
        raise _http_error(e)
    return RegisteredUser(user_id=request.user_id, referral_code=code)


@app.post("/users/{user_id}/referral", tags=["Users"])
def apply_referral(user_id: str, request: ApplyReferralRequest, service: LedgerService = Depends(get_ledger_service)):
    try:
        referrer_id = service.apply_referral_code(user_id, request.referral_code)
    except LedgerError as e:
        raise _http_error(e)
    return {"user_id": user_id, "referrer_id": referrer_id}


@app.put("/users/{user_id}/wallet", status_code=status.HTTP_204_NO_CONTENT, tags=["Users"])
def link_wallet(user_id: str, request: LinkWalletRequest, service: LedgerService = Depends(get_ledger_service)):
    try:
        service.link_ton_address(user_id, request.ton_address)
    except LedgerError as e:
        raise _http_error(e)


@app.get("/users/{user_id}/balance", response_model=UserBalance, tags=["Users"])
def get_user_balance(user_id: str, service: LedgerService = Depends(get_ledger_service)) -> UserBalance:
    try:
        return service.balance_summary(user_id)
    except LedgerError as e:
        raise _http_error(e)


@app.get("/users/{user_id}/ledger", response_model=LedgerHistoryResponse, tags=["Users"])
def get_user_ledger(
    user_id: str, limit: int = 50, offset: int = 0, service: LedgerService = Depends(get_ledger_service)
) -> LedgerHistoryResponse:
    try:
        return service.get_ledger_history(user_id, limit, offset)
    except LedgerError as e:
        raise _http_error(e)


# -- balance changes -----------------------------------------------------

@app.post("/users/{user_id}/credit", response_model=LedgerEntry, status_code=status.HTTP_201_CREATED, tags=["Ledger"])
def credit(user_id: str, request: CreditRequest, service: LedgerService = Depends(get_ledger_service)) -> LedgerEntry:
    try:
        return service.credit(user_id, request.amount, request.entry_type, request.meta)
    except (LedgerError, ValueError) as e:
        raise _http_error(e)


@app.post("/users/{user_id}/spend", response_model=SpendResult, tags=["Ledger"])
def spend(user_id: str, request: SpendRequest, service: LedgerService = Depends(get_ledger_service)) -> SpendResult:
    try:
        return service.spend(user_id, request.amount, request.spend_type, request.reference_id)
    except (LedgerError, ValueError) as e:
        raise _http_error(e)


@app.post("/users/{user_id}/grants/onboarding", response_model=GrantResult, tags=["Grants"])
def grant_onboarding(user_id: str, service: LedgerService = Depends(get_ledger_service)) -> GrantResult:
    try:
        return service.grant_onboarding_if_eligible(user_id)
    except LedgerError as e:
        raise _http_error(e)


@app.post("/users/{user_id}/grants/referral-milestone", response_model=GrantResult, tags=["Grants"])
def grant_referral_milestone(user_id: str, service: LedgerService = Depends(get_ledger_service)) -> GrantResult:
    try:
        return service.grant_referral_milestone_if_eligible(user_id)
    except LedgerError as e:
        raise _http_error(e)


@app.post("/users/{user_id}/wheel/spin", response_model=SpinResult, tags=["Wheel"])
def spin_wheel(user_id: str, service: LedgerService = Depends(get_ledger_service)) -> SpinResult:
    try:
        return service.spin_wheel(user_id)
    except LedgerError as e:
        raise _http_error(e)


@app.post("/predictions/{market_id}/settle", response_model=SettlementResult, tags=["Predictions"])
def settle_prediction(
    market_id: str, request: SettleRequest, service: LedgerService = Depends(get_ledger_service)
) -> SettlementResult:
    try:
        return service.settle_prediction(
            market_id,
            request.winning_stakes,
            request.winning_side_total,
            request.losing_side_total,
            request.fee_rate,
        )
    except (LedgerError, ValueError) as e:
        raise _http_error(e)


# -- withdrawals ---------------------------------------------------------

@app.post(
    "/users/{user_id}/withdrawals",
    response_model=WithdrawalRequest,
    status_code=status.HTTP_201_CREATED,
    tags=["Withdrawals"],
)
def request_withdrawal(
    user_id: str, request: WithdrawRequest, service: LedgerService = Depends(get_ledger_service)
) -> WithdrawalRequest:
    try:
        return service.request_withdrawal(user_id, request.amount, request.external_address)
    except (LedgerError, ValueError) as e:
        raise _http_error(e)


@app.get("/users/{user_id}/withdrawals", response_model=list[WithdrawalRequest], tags=["Withdrawals"])
def list_withdrawals(user_id: str, service: LedgerService = Depends(get_ledger_service)):
    try:
        return service.list_withdrawals(user_id)
    except LedgerError as e:
        raise _http_error(e)


@app.get("/withdrawals/{withdrawal_id}", response_model=WithdrawalRequest, tags=["Withdrawals"])
def get_withdrawal(withdrawal_id: UUID, service: LedgerService = Depends(get_ledger_service)) -> WithdrawalRequest:
    try:
        return service.get_withdrawal(withdrawal_id)
    except LedgerError as e:
        raise _http_error(e)


@app.post("/withdrawals/{withdrawal_id}/approve", response_model=WithdrawalRequest, tags=["Withdrawals"])
def approve_withdrawal(withdrawal_id: UUID, service: LedgerService = Depends(get_ledger_service)) -> WithdrawalRequest:
    try:
        return service.approve_withdrawal(withdrawal_id)
    except LedgerError as e:
        raise _http_error(e)


@app.post("/withdrawals/{withdrawal_id}/paid", response_model=WithdrawalRequest, tags=["Withdrawals"])
def mark_withdrawal_paid(
    withdrawal_id: UUID, request: MarkPaidRequest, service: LedgerService = Depends(get_ledger_service)
) -> WithdrawalRequest:
    try:
        return service.mark_withdrawal_paid(withdrawal_id, request.tx_hash)
    except LedgerError as e:
        raise _http_error(e)


@app.post("/withdrawals/{withdrawal_id}/reject", response_model=WithdrawalRequest, tags=["Withdrawals"])
def reject_withdrawal(
    withdrawal_id: UUID, request: RejectWithdrawalRequest, service: LedgerService = Depends(get_ledger_service)
) -> WithdrawalRequest:
    try:
        return service.reject_withdrawal(withdrawal_id, request.reason)
    except LedgerError as e:
        raise _http_error(e)


@app.get("/withdrawals/{withdrawal_id}/quote", response_model=WithdrawalQuote, tags=["Withdrawals"])
def withdrawal_quote(withdrawal_id: UUID, service: LedgerService = Depends(get_ledger_service)) -> WithdrawalQuote:
    try:
        return service.withdrawal_quote_refresh(withdrawal_id)
    except LedgerError as e:
        raise _http_error(e)


# -- pools & leaderboards ------------------------------------------------

@app.get("/pools", response_model=list[PoolBalance], tags=["Pools"])
def list_pools(service: LedgerService = Depends(get_ledger_service)):
    try:
        return service.pool_balances()
    except LedgerError as e:
        raise _http_error(e)


@app.get("/pools/{pool_id}", tags=["Pools"])
def get_pool(pool_id: PoolId, service: LedgerService = Depends(get_ledger_service)):
    try:
        balance = service.pool_balance(pool_id)
    except LedgerError as e:
        raise _http_error(e)
    return {"pool_id": pool_id, "balance": balance}


@app.post("/pools/transfer", response_model=PoolTransfer, tags=["Pools"])
def transfer_between_pools(request: TransferRequest, service: LedgerService = Depends(get_ledger_service)) -> PoolTransfer:
    try:
        return service.transfer_between_pools(request.from_pool, request.to_pool, request.amount)
    except (LedgerError, ValueError) as e:
        raise _http_error(e)


@app.get("/leaderboards/spenders", response_model=list[SpenderRow], tags=["Leaderboards"])
def top_spenders(
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    limit: int = 10,
    service: LedgerService = Depends(get_ledger_service),
):
    end = _utc(end) if end else datetime.now(timezone.utc)
    start = _utc(start) if start else end - timedelta(days=7)
    try:
        return service.top_spenders(start, end, limit)
    except LedgerError as e:
        raise _http_error(e)


@app.get("/leaderboards/referrers", response_model=list[ReferrerRow], tags=["Leaderboards"])
def top_referrers(
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    limit: int = 10,
    service: LedgerService = Depends(get_ledger_service),
):
    end = _utc(end) if end else datetime.now(timezone.utc)
    start = _utc(start) if start else end - timedelta(days=7)
    try:
        return service.top_referrers(start, end, limit)
    except LedgerError as e:
        raise _http_error(e)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
