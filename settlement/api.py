import logging
import secrets
from datetime import date, datetime, time, timedelta, timezone
from functools import lru_cache
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, FastAPI, Header, Query, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import settings
from .errors import (
    InsufficientFundsError,
    InvalidTransitionError,
    LedgerServiceError,
    LedgerValidationError,
    StorageUnavailableError,
    WithdrawalNotFoundError,
)
from .logging_config import setup_logging
from .models import (
    BalanceResponse,
    EarningResponse,
    Granularity,
    HistoryResponse,
    PaymentDetailResponse,
    RecordEarningRequest,
    RollupResponse,
    SettleWithdrawalRequest,
    StaleWithdrawalsResponse,
    SummaryResponse,
    WithdrawalRequest,
    WithdrawalResponse,
    WithdrawalStatus,
)
from .service import EARNING_REPLAYED, WITHDRAWAL_REPLAYED, LedgerService

setup_logging()
logger = logging.getLogger(__name__)


class MissingIdentityError(LedgerServiceError):
    pass


ERROR_STATUS = {
    LedgerValidationError: status.HTTP_400_BAD_REQUEST,
    MissingIdentityError: status.HTTP_401_UNAUTHORIZED,
    WithdrawalNotFoundError: status.HTTP_404_NOT_FOUND,
    InsufficientFundsError: status.HTTP_409_CONFLICT,
    InvalidTransitionError: status.HTTP_409_CONFLICT,
    StorageUnavailableError: status.HTTP_503_SERVICE_UNAVAILABLE,
}


@lru_cache()
def get_ledger_service() -> LedgerService:
    service = LedgerService()
    service.store.create_all()
    return service


def get_current_vendor(x_vendor_id: Optional[str] = Header(default=None)) -> str:
    """Vendor identity as established by the upstream authentication gateway"""
    if not x_vendor_id or not x_vendor_id.strip():
        raise MissingIdentityError("Vendor identity is required")
    return x_vendor_id.strip()


def require_internal_token(
    x_internal_token: Optional[str] = Header(default=None),
    service: LedgerService = Depends(get_ledger_service),
):
    expected = service.settings.INTERNAL_API_TOKEN
    if not expected or not x_internal_token or not secrets.compare_digest(x_internal_token, expected):
        raise MissingIdentityError("Internal token is missing or invalid")


def parse_date(value: Optional[str], field: str, end_of_range: bool = False) -> Optional[datetime]:
    """ISO date or datetime; naive values are UTC, a bare end date covers that whole day"""
    if value is None or value == "":
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        if len(text) == 10:
            day = date.fromisoformat(text)
            if end_of_range:
                day += timedelta(days=1)
            return datetime.combine(day, time.min, tzinfo=timezone.utc)
        parsed = datetime.fromisoformat(text)
    except ValueError:
        raise LedgerValidationError(field, f"{value!r} is not an ISO-8601 date")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


app = FastAPI(
    title="Vendor Settlement Ledger API",
    description="Vendor earnings, platform fees, withdrawals and balances with idempotent payouts",
    version="1.0.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(LedgerServiceError)
async def ledger_error_handler(request: Request, exc: LedgerServiceError):
    status_code = next(
        (code for error_type, code in ERROR_STATUS.items() if isinstance(exc, error_type)),
        status.HTTP_500_INTERNAL_SERVER_ERROR,
    )
    content = {"success": False, "message": str(exc)}
    headers = None
    if isinstance(exc, LedgerValidationError):
        content["field"] = exc.field
        content["message"] = exc.message
    elif isinstance(exc, StorageUnavailableError):
        headers = {"Retry-After": "5"}
    elif status_code == status.HTTP_500_INTERNAL_SERVER_ERROR:
        logger.error(f"Unhandled ledger error on {request.url.path}: {exc}", exc_info=exc)
    return JSONResponse(status_code=status_code, content=content, headers=headers)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    """Malformed query parameters and bodies get the same envelope as ledger validation errors"""
    errors = exc.errors()
    first = errors[0] if errors else {}
    names = [part for part in first.get("loc", ()) if isinstance(part, str)]
    field = names[-1] if names else "request"
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"success": False, "field": field, "message": first.get("msg", "Invalid request")},
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unexpected error on {request.method} {request.url.path}: {exc}", exc_info=exc)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"success": False, "message": "Internal server error"},
    )


@app.get("/health", tags=["System"])
def health_check():
    return {"status": "healthy", "service": "settlement-ledger"}


internal = APIRouter(prefix="/internal", tags=["Internal"], dependencies=[Depends(require_internal_token)])


@internal.post("/earnings", response_model=EarningResponse, status_code=status.HTTP_201_CREATED)
def record_earning(
    request: RecordEarningRequest,
    response: Response,
    service: LedgerService = Depends(get_ledger_service),
):
    result = service.record_earning(request)
    if result.message == EARNING_REPLAYED:
        response.status_code = status.HTTP_200_OK
    return result


@internal.post("/withdrawals/{withdrawal_id}/settle", response_model=WithdrawalResponse)
def settle_withdrawal(
    withdrawal_id: UUID,
    request: SettleWithdrawalRequest,
    service: LedgerService = Depends(get_ledger_service),
):
    return service.settle_withdrawal(withdrawal_id, request)


@internal.get("/withdrawals/stale", response_model=StaleWithdrawalsResponse)
def stale_withdrawals(
    older_than_hours: Optional[int] = Query(default=None, alias="olderThanHours"),
    service: LedgerService = Depends(get_ledger_service),
):
    hours = older_than_hours if older_than_hours is not None else service.settings.STALE_PENDING_HOURS
    return StaleWithdrawalsResponse(
        older_than_hours=hours,
        payments=service.find_stale_withdrawals(hours),
    )


@internal.get("/withdrawals", response_model=HistoryResponse)
def list_all_withdrawals(
    page: int = 1,
    limit: Optional[int] = None,
    status_filter: Optional[WithdrawalStatus] = Query(default=None, alias="status"),
    vendor_filter: Optional[str] = Query(default=None, alias="vendorId"),
    service: LedgerService = Depends(get_ledger_service),
):
    result = service.list_all_withdrawals(page, limit, status=status_filter, vendor_id=vendor_filter)
    return HistoryResponse(payments=result.payments, pagination=result.pagination)


vendor = APIRouter(tags=["Vendor payments"])


@vendor.get("/history", response_model=HistoryResponse)
def get_history(
    page: int = 1,
    limit: Optional[int] = None,
    start_date: Optional[str] = Query(default=None, alias="startDate"),
    end_date: Optional[str] = Query(default=None, alias="endDate"),
    cursor: Optional[str] = None,
    vendor_id: str = Depends(get_current_vendor),
    service: LedgerService = Depends(get_ledger_service),
):
    result = service.list_history(
        vendor_id,
        page,
        limit,
        parse_date(start_date, "startDate"),
        parse_date(end_date, "endDate", end_of_range=True),
        cursor,
    )
    return HistoryResponse(payments=result.payments, pagination=result.pagination)


@vendor.get("/summary", response_model=SummaryResponse)
def get_summary(
    start_date: Optional[str] = Query(default=None, alias="startDate"),
    end_date: Optional[str] = Query(default=None, alias="endDate"),
    vendor_id: str = Depends(get_current_vendor),
    service: LedgerService = Depends(get_ledger_service),
):
    summary = service.summarize(
        vendor_id,
        parse_date(start_date, "startDate"),
        parse_date(end_date, "endDate", end_of_range=True),
    )
    return SummaryResponse(**summary.model_dump())


@vendor.get("/summary/rollup", response_model=RollupResponse)
def get_rollup(
    granularity: Granularity = Granularity.ALL,
    start_date: Optional[str] = Query(default=None, alias="startDate"),
    end_date: Optional[str] = Query(default=None, alias="endDate"),
    vendor_id: str = Depends(get_current_vendor),
    service: LedgerService = Depends(get_ledger_service),
):
    buckets = service.rollup(
        vendor_id,
        granularity,
        parse_date(start_date, "startDate"),
        parse_date(end_date, "endDate", end_of_range=True),
    )
    return RollupResponse(granularity=granularity, buckets=buckets)


@vendor.get("/balance", response_model=BalanceResponse)
def get_balance(
    vendor_id: str = Depends(get_current_vendor),
    service: LedgerService = Depends(get_ledger_service),
):
    return BalanceResponse(**service.get_balance(vendor_id).model_dump())


@vendor.post("/withdrawals", response_model=WithdrawalResponse, status_code=status.HTTP_201_CREATED)
def request_withdrawal(
    request: WithdrawalRequest,
    response: Response,
    vendor_id: str = Depends(get_current_vendor),
    service: LedgerService = Depends(get_ledger_service),
):
    result = service.request_withdrawal(vendor_id, request)
    if result.message == WITHDRAWAL_REPLAYED:
        response.status_code = status.HTTP_200_OK
    return result


@vendor.get("/{payment_id}", response_model=PaymentDetailResponse)
def get_payment(
    payment_id: str,
    vendor_id: str = Depends(get_current_vendor),
    service: LedgerService = Depends(get_ledger_service),
):
    try:
        withdrawal_id = UUID(payment_id)
    except ValueError:
        raise WithdrawalNotFoundError(f"Payment {payment_id} not found")
    record = service.get_withdrawal(vendor_id, withdrawal_id)
    return PaymentDetailResponse(**record.model_dump())


app.include_router(internal)
app.include_router(vendor)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
