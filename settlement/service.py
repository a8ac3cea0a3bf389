import logging
from datetime import datetime, timedelta
from typing import Optional
from uuid import UUID

from .balance import BalanceCalculator
from .config import Settings, settings as default_settings
from .db import utcnow
from .errors import LedgerValidationError, WithdrawalNotFoundError
from .history import HistoryQueryService
from .models import (
    EarningEvent,
    EarningResponse,
    Granularity,
    HistoryPage,
    LedgerSummary,
    RecordEarningRequest,
    SettleWithdrawalRequest,
    SummaryBucket,
    VendorBalanceView,
    WithdrawalRecord,
    WithdrawalRequest,
    WithdrawalResponse,
    WithdrawalStatus,
    earning_minor_units,
    from_minor_units,
)
from .processor import PaymentProcessor
from .reconcile import find_stale_withdrawals
from .store import LedgerStore
from .summary import SummaryAggregator

logger = logging.getLogger(__name__)

EARNING_REPLAYED = "Earning already recorded (idempotent return)"
WITHDRAWAL_REPLAYED = "Withdrawal already exists (idempotent return)"


class LedgerService:
    def __init__(self, store: Optional[LedgerStore] = None, settings: Optional[Settings] = None):
        self.settings = settings or default_settings
        self.store = store or LedgerStore(self.settings.DATABASE_URL)
        self.calculator = BalanceCalculator(self.store)
        self.processor = PaymentProcessor(self.store, self.calculator)
        self.history = HistoryQueryService(self.store, self.settings)
        self.summary = SummaryAggregator(self.store, self.calculator, self.settings)

    def record_earning(self, request: RecordEarningRequest) -> EarningResponse:
        _gross, _fee, net = earning_minor_units(
            request.gross_amount, request.platform_fee_amount, request.net_amount
        )
        candidate = EarningEvent(
            vendor_id=request.vendor_id,
            order_id=request.order_id,
            gross_amount=request.gross_amount,
            platform_fee_amount=request.platform_fee_amount,
            net_amount=from_minor_units(net),
            occurred_at=request.occurred_at or utcnow(),
            description=request.description,
        )
        earning, created = self.store.add_earning(candidate)
        if not created:
            return EarningResponse(earning=earning, message=EARNING_REPLAYED)

        logger.info(
            f"Recorded earning for vendor {earning.vendor_id} order {earning.order_id}: "
            f"gross={earning.gross_amount} fee={earning.platform_fee_amount} net={earning.net_amount}"
        )
        return EarningResponse(earning=earning, message="Earning recorded successfully")

    def get_balance(self, vendor_id: str) -> VendorBalanceView:
        return self.calculator.compute_balance(vendor_id)

    def request_withdrawal(self, vendor_id: str, request: WithdrawalRequest) -> WithdrawalResponse:
        record, created = self.processor.submit_withdrawal(
            vendor_id,
            request.amount,
            request.idempotency_key,
            payment_method=request.payment_method,
            notes=request.notes,
        )
        if not created:
            return WithdrawalResponse(payment=record, message=WITHDRAWAL_REPLAYED)
        return WithdrawalResponse(payment=record, message="Withdrawal requested successfully")

    def settle_withdrawal(self, withdrawal_id: UUID, request: SettleWithdrawalRequest) -> WithdrawalResponse:
        record = self.processor.settle_withdrawal(
            withdrawal_id,
            request.outcome,
            external_reference=request.external_reference,
            failure_reason=request.failure_reason,
            processed_by=request.processed_by,
        )
        return WithdrawalResponse(payment=record, message=f"Withdrawal {record.status.value}")

    def get_withdrawal(self, vendor_id: str, withdrawal_id: UUID) -> WithdrawalRecord:
        record = self.store.get_withdrawal(withdrawal_id)
        # Another vendor's record is reported exactly like a missing one
        if record is None or record.vendor_id != vendor_id:
            raise WithdrawalNotFoundError(f"Payment {withdrawal_id} not found")
        return record

    def list_history(
        self,
        vendor_id: str,
        page: int = 1,
        limit: Optional[int] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        cursor: Optional[str] = None,
    ) -> HistoryPage:
        return self.history.list_history(vendor_id, page, limit, start, end, cursor)

    def list_all_withdrawals(
        self,
        page: int = 1,
        limit: Optional[int] = None,
        status: Optional[WithdrawalStatus] = None,
        vendor_id: Optional[str] = None,
    ) -> HistoryPage:
        return self.history.list_all(page, limit, status=status, vendor_id=vendor_id)

    def summarize(
        self,
        vendor_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> LedgerSummary:
        return self.summary.summarize(vendor_id, start, end)

    def rollup(
        self,
        vendor_id: str,
        granularity: Granularity = Granularity.ALL,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> list[SummaryBucket]:
        return self.summary.rollup(vendor_id, granularity, start, end)

    def find_stale_withdrawals(self, older_than_hours: Optional[int] = None) -> list[WithdrawalRecord]:
        hours = older_than_hours if older_than_hours is not None else self.settings.STALE_PENDING_HOURS
        if hours < 0:
            raise LedgerValidationError("olderThanHours", "must not be negative")
        return find_stale_withdrawals(self.store, timedelta(hours=hours))
