from datetime import datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .errors import LedgerValidationError


CENTS = Decimal("0.01")
ZERO = Decimal("0.00")


def to_minor_units(amount: Decimal, field: str = "amount") -> int:
    """Convert a two-decimal amount into integer cents, rejecting sub-cent precision."""
    try:
        value = Decimal(amount)
        quantized = value.quantize(CENTS)
    except (InvalidOperation, TypeError, ValueError):
        raise LedgerValidationError(field, f"{amount!r} is not a valid amount")
    if quantized != value:
        raise LedgerValidationError(field, "must have at most two decimal places")
    return int(quantized * 100)


def from_minor_units(value: Optional[int]) -> Decimal:
    return (Decimal(value or 0) / 100).quantize(CENTS)


def earning_minor_units(gross: Decimal, fee: Decimal, net: Optional[Decimal] = None) -> tuple[int, int, int]:
    """
    Validate an earning's amounts and return (gross, fee, net) in cents.

    Requires gross >= 0, 0 <= fee <= gross and net == gross - fee; net is
    derived when omitted.
    """
    gross_minor = to_minor_units(gross, "grossAmount")
    fee_minor = to_minor_units(fee, "platformFeeAmount")
    if gross_minor < 0:
        raise LedgerValidationError("grossAmount", "must not be negative")
    if fee_minor < 0 or fee_minor > gross_minor:
        raise LedgerValidationError("platformFeeAmount", "must be between zero and the gross amount")
    if net is None:
        return gross_minor, fee_minor, gross_minor - fee_minor
    net_minor = to_minor_units(net, "netAmount")
    if net_minor != gross_minor - fee_minor:
        raise LedgerValidationError("netAmount", "must equal grossAmount minus platformFeeAmount")
    return gross_minor, fee_minor, net_minor


class WithdrawalStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class SettlementOutcome(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"


class Granularity(str, Enum):
    DAY = "day"
    WEEK = "week"
    MONTH = "month"
    ALL = "all"


class LedgerModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


class EarningEvent(LedgerModel):
    vendor_id: str
    order_id: str
    gross_amount: Decimal
    platform_fee_amount: Decimal
    net_amount: Decimal
    occurred_at: datetime
    description: Optional[str] = None
    sequence: Optional[int] = None
    recorded_at: Optional[datetime] = None


class WithdrawalRecord(LedgerModel):
    withdrawal_id: UUID
    vendor_id: str
    amount: Decimal
    idempotency_key: str
    status: WithdrawalStatus
    requested_at: datetime
    settled_at: Optional[datetime] = None
    payment_method: Optional[str] = None
    notes: Optional[str] = None
    external_reference: Optional[str] = None
    failure_reason: Optional[str] = None
    processed_by: Optional[str] = None
    sequence: Optional[int] = None

    def is_terminal(self) -> bool:
        return self.status != WithdrawalStatus.PENDING

    def reserves_funds(self) -> bool:
        return self.status != WithdrawalStatus.FAILED


class VendorBalanceView(LedgerModel):
    total_earnings: Decimal = ZERO
    platform_fees: Decimal = ZERO
    total_withdrawn: Decimal = ZERO
    current_balance: Decimal = ZERO


class RecordEarningRequest(LedgerModel):
    vendor_id: str = Field(..., min_length=1)
    order_id: str = Field(..., min_length=1, description="Natural dedup key for the order line")
    gross_amount: Decimal
    platform_fee_amount: Decimal = ZERO
    net_amount: Optional[Decimal] = Field(default=None, description="Derived from gross minus fee when omitted")
    occurred_at: Optional[datetime] = None
    description: Optional[str] = None

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "vendorId": "vendor-101",
            "orderId": "ORD-2025-123",
            "grossAmount": "100.00",
            "platformFeeAmount": "10.00",
            "occurredAt": "2025-05-08T10:00:00Z"
        }
    })


class WithdrawalRequest(LedgerModel):
    amount: Decimal
    idempotency_key: str = Field(..., description="Unique per vendor; retries with the same key are safe")
    payment_method: Optional[str] = None
    notes: Optional[str] = None

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "amount": "90.00",
            "idempotencyKey": "payout-2025-05-week-19",
            "paymentMethod": "bank"
        }
    })


class SettleWithdrawalRequest(LedgerModel):
    outcome: SettlementOutcome
    external_reference: Optional[str] = None
    failure_reason: Optional[str] = None
    processed_by: Optional[str] = None


class Pagination(LedgerModel):
    total_pages: int
    current_page: Optional[int] = None
    total_items: int
    next_cursor: Optional[str] = None


class HistoryPage(LedgerModel):
    payments: list[WithdrawalRecord]
    pagination: Pagination


class LedgerSummary(LedgerModel):
    total_earnings: Decimal
    platform_fees: Decimal
    total_withdrawn: Decimal
    current_balance: Decimal
    pending_amount: Decimal = ZERO
    payment_count: int = 0
    pending_count: int = 0
    total_payments: int = 0
    last_payment_date: Optional[datetime] = None
    last_payment_amount: Decimal = ZERO
    recent_payments: list[WithdrawalRecord] = Field(default_factory=list)


class SummaryBucket(LedgerModel):
    period_start: Optional[datetime] = None
    total_earnings: Decimal = ZERO
    platform_fees: Decimal = ZERO
    net_earnings: Decimal = ZERO
    total_withdrawn: Decimal = ZERO


class EarningResponse(LedgerModel):
    success: bool = True
    earning: EarningEvent
    message: str


class WithdrawalResponse(LedgerModel):
    success: bool = True
    payment: WithdrawalRecord
    message: str


class PaymentDetailResponse(WithdrawalRecord):
    success: bool = True


class BalanceResponse(VendorBalanceView):
    success: bool = True


class HistoryResponse(HistoryPage):
    success: bool = True


class SummaryResponse(LedgerSummary):
    success: bool = True


class RollupResponse(LedgerModel):
    success: bool = True
    granularity: Granularity
    buckets: list[SummaryBucket]


class StaleWithdrawalsResponse(LedgerModel):
    success: bool = True
    older_than_hours: int
    payments: list[WithdrawalRecord]
