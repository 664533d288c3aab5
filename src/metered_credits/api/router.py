from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from typing import List, NoReturn, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status

from ..cache.memory import InMemoryAsyncCache
from ..config import CreditSettings, get_settings
from ..db.base import BaseDBManager
from ..db.memory import InMemoryDBManager
from ..db.mongo import MongoDBManager
from ..exceptions import ErrorCode
from ..logging.ledger_logger import LedgerLogger
from ..models.api_models import (
    AddCreditsRequest,
    ConfirmReservationRequest,
    CreditBalanceResponse,
    CreditCheckResponse,
    CreditOperationResponse,
    DeductCreditsRequest,
    ProvisionAccountRequest,
    RateLimitStatusResponse,
    ReleaseReservationRequest,
    ReservationResponse,
    ReserveCreditsRequest,
    SweepResponse,
)
from ..models.results import CreditOperationResult, OperationResult
from ..models.transaction import ChatSpendMetadata, CreditTransaction, GrantMetadata
from ..notifications.queue import InMemoryNotificationQueue
from ..services.credit_ledger import CreditLedger
from ..services.metered_call import MeteredCallGuard
from ..services.notification_service import NotificationService
from ..services.rate_limiter import RateLimiter
from ..services.reservation_manager import ReservationManager, new_reservation_id


router = APIRouter(prefix="/credits", tags=["credits"])


_STATUS_BY_CODE = {
    ErrorCode.INSUFFICIENT_CREDITS: status.HTTP_402_PAYMENT_REQUIRED,
    ErrorCode.USER_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorCode.RESERVATION_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorCode.RESERVATION_ALREADY_RESOLVED: status.HTTP_409_CONFLICT,
    ErrorCode.DUPLICATE_RESERVATION: status.HTTP_409_CONFLICT,
    ErrorCode.INVALID_AMOUNT: status.HTTP_400_BAD_REQUEST,
    ErrorCode.TRANSACTION_FAILURE: status.HTTP_503_SERVICE_UNAVAILABLE,
    ErrorCode.CREDIT_CONFIRMATION_FAILED: status.HTTP_500_INTERNAL_SERVER_ERROR,
    ErrorCode.RATE_LIMIT_EXCEEDED: status.HTTP_429_TOO_MANY_REQUESTS,
}


@dataclass
class CreditServices:
    db: BaseDBManager
    ledger_logger: LedgerLogger
    credit_ledger: CreditLedger
    reservations: ReservationManager
    rate_limiter: RateLimiter
    notifications: NotificationService
    guard: MeteredCallGuard


def _create_db_manager(settings: CreditSettings) -> BaseDBManager:
    if settings.mongo_uri:
        return MongoDBManager.from_client_uri(settings.mongo_uri, settings.mongo_db)
    return InMemoryDBManager()


def build_services(
    settings: Optional[CreditSettings] = None,
    db: Optional[BaseDBManager] = None,
) -> CreditServices:
    settings = settings or get_settings()
    db = db or _create_db_manager(settings)
    ledger_logger = LedgerLogger(db=db, file_path=settings.ledger_log_path)
    credit_ledger = CreditLedger(
        db=db, ledger_logger=ledger_logger, cache=InMemoryAsyncCache(), settings=settings
    )
    notifications = NotificationService(
        db=db,
        queue=InMemoryNotificationQueue(),
        credit_ledger=credit_ledger,
        low_credit_threshold=settings.low_credit_threshold,
    )
    reservations = ReservationManager(credit_ledger, notifications=notifications)
    rate_limiter = RateLimiter(db, settings=settings)
    return CreditServices(
        db=db,
        ledger_logger=ledger_logger,
        credit_ledger=credit_ledger,
        reservations=reservations,
        rate_limiter=rate_limiter,
        notifications=notifications,
        guard=MeteredCallGuard(
            credit_ledger, reservations, rate_limiter=rate_limiter, notifications=notifications
        ),
    )


@lru_cache
def get_services() -> CreditServices:
    return build_services()


def _raise_for(result: OperationResult) -> NoReturn:
    code = result.error_code or ErrorCode.TRANSACTION_FAILURE
    raise HTTPException(
        status_code=_STATUS_BY_CODE.get(code, status.HTTP_500_INTERNAL_SERVER_ERROR),
        detail={"message": result.message, "code": code.value},
    )


def _operation_response(user_id: str, result: CreditOperationResult) -> CreditOperationResponse:
    if not result.success:
        _raise_for(result)
    return CreditOperationResponse(
        user_id=user_id,
        message=result.message,
        remaining_credits=result.remaining_credits,
        credits_deducted=result.credits_deducted,
    )


@router.post(
    "/accounts/{user_id}",
    response_model=CreditOperationResponse,
    status_code=status.HTTP_201_CREATED,
)
async def provision_account(
    user_id: str,
    payload: Optional[ProvisionAccountRequest] = None,
    services: CreditServices = Depends(get_services),
) -> CreditOperationResponse:
    initial = payload.initial_credits if payload else None
    result = await services.credit_ledger.provision_account(user_id, initial)
    return _operation_response(user_id, result)


@router.post("/add", response_model=CreditOperationResponse)
async def add_credits(
    payload: AddCreditsRequest, services: CreditServices = Depends(get_services)
) -> CreditOperationResponse:
    metadata = GrantMetadata(note=payload.note) if payload.note else None
    result = await services.credit_ledger.add(
        payload.user_id, payload.amount, payload.operation, metadata
    )
    return _operation_response(payload.user_id, result)


@router.post("/deduct", response_model=CreditOperationResponse)
async def deduct_credits(
    payload: DeductCreditsRequest, services: CreditServices = Depends(get_services)
) -> CreditOperationResponse:
    result = await services.credit_ledger.deduct(
        payload.user_id, payload.amount, payload.operation
    )
    return _operation_response(payload.user_id, result)


@router.get("/balance/{user_id}", response_model=CreditBalanceResponse)
async def get_balance(
    user_id: str, services: CreditServices = Depends(get_services)
) -> CreditBalanceResponse:
    result = await services.credit_ledger.get_balance(user_id)
    if not result.success or result.balance is None:
        _raise_for(result)
    return CreditBalanceResponse(user_id=user_id, balance=result.balance)


@router.get("/check/{user_id}", response_model=CreditCheckResponse)
async def check_credits(
    user_id: str,
    required: int = Query(ge=0),
    services: CreditServices = Depends(get_services),
) -> CreditCheckResponse:
    result = await services.credit_ledger.check_credits(user_id, required)
    return CreditCheckResponse(
        user_id=user_id,
        required=required,
        has_enough=result.has_enough,
        available=result.available,
        message=result.message,
    )


@router.get("/history/{user_id}", response_model=List[CreditTransaction])
async def get_history(
    user_id: str,
    limit: Optional[int] = Query(default=None, ge=1),
    services: CreditServices = Depends(get_services),
) -> List[CreditTransaction]:
    result = await services.credit_ledger.get_history(user_id, limit)
    if not result.success:
        _raise_for(result)
    return result.history


@router.post(
    "/reservations",
    response_model=ReservationResponse,
    status_code=status.HTTP_201_CREATED,
)
async def reserve_credits(
    payload: ReserveCreditsRequest, services: CreditServices = Depends(get_services)
) -> ReservationResponse:
    reservation_id = payload.reservation_id or new_reservation_id()
    result = await services.reservations.reserve(
        payload.user_id, payload.amount, payload.operation, reservation_id, payload.metadata
    )
    if not result.success:
        _raise_for(result)
    return ReservationResponse(
        user_id=payload.user_id,
        reservation_id=reservation_id,
        message=result.message,
        remaining_credits=result.remaining_credits,
    )


@router.post("/reservations/{reservation_id}/confirm", response_model=CreditOperationResponse)
async def confirm_reservation(
    reservation_id: str,
    payload: ConfirmReservationRequest,
    services: CreditServices = Depends(get_services),
) -> CreditOperationResponse:
    metadata = ChatSpendMetadata(
        session_id=payload.session_id, conversation_id=payload.conversation_id
    )
    result = await services.reservations.confirm(
        payload.user_id, reservation_id, payload.actual_tokens, payload.operation, metadata
    )
    return _operation_response(payload.user_id, result)


@router.post("/reservations/{reservation_id}/release", response_model=CreditOperationResponse)
async def release_reservation(
    reservation_id: str,
    payload: ReleaseReservationRequest,
    services: CreditServices = Depends(get_services),
) -> CreditOperationResponse:
    result = await services.reservations.release(
        payload.user_id, reservation_id, payload.reason or "client-release"
    )
    return _operation_response(payload.user_id, result)


@router.get("/rate-limits/{user_id}/{action}", response_model=RateLimitStatusResponse)
async def rate_limit_status(
    user_id: str, action: str, services: CreditServices = Depends(get_services)
) -> RateLimitStatusResponse:
    result = await services.rate_limiter.status(user_id, action)
    return RateLimitStatusResponse(
        user_id=user_id,
        action=action,
        allowed=result.allowed,
        remaining=result.remaining,
        reset_time=result.reset_time,
    )


@router.delete("/rate-limits/{user_id}/{action}", status_code=status.HTTP_204_NO_CONTENT)
async def reset_rate_limit(
    user_id: str, action: str, services: CreditServices = Depends(get_services)
) -> None:
    result = await services.rate_limiter.reset(user_id, action)
    if not result.success:
        _raise_for(result)


@router.post("/rate-limits/sweep", response_model=SweepResponse)
async def sweep_rate_limits(
    services: CreditServices = Depends(get_services),
) -> SweepResponse:
    result = await services.rate_limiter.sweep_expired()
    if not result.success:
        _raise_for(result)
    return SweepResponse(cleaned_count=result.cleaned_count, message=result.message)
