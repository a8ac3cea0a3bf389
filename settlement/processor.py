"""Withdrawal authorization and settlement"""
import logging
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Optional
from uuid import UUID, uuid4

from .balance import BalanceCalculator
from .db import utcnow
from .errors import (
    InsufficientFundsError,
    InvalidAmountError,
    InvalidTransitionError,
    LedgerValidationError,
    WithdrawalNotFoundError,
)
from .models import (
    SettlementOutcome,
    WithdrawalRecord,
    WithdrawalStatus,
    to_minor_units,
)
from .store import LedgerStore

logger = logging.getLogger(__name__)


class PaymentProcessor:
    def __init__(self, store: LedgerStore, calculator: Optional[BalanceCalculator] = None):
        self.store = store
        self.calculator = calculator or BalanceCalculator(store)

    def request_withdrawal(
        self,
        vendor_id: str,
        amount: Decimal,
        idempotency_key: str,
        payment_method: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> WithdrawalRecord:
        record, _created = self.submit_withdrawal(vendor_id, amount, idempotency_key, payment_method, notes)
        return record

    def submit_withdrawal(
        self,
        vendor_id: str,
        amount: Decimal,
        idempotency_key: str,
        payment_method: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> tuple[WithdrawalRecord, bool]:
        """Returns (record, created); created is False for an idempotent replay."""
        amount = self._validate_amount(amount)
        if not idempotency_key or not idempotency_key.strip():
            raise LedgerValidationError("idempotencyKey", "must not be blank")

        existing = self.store.find_withdrawal(vendor_id, idempotency_key)
        if existing is not None:
            logger.info(f"Idempotent replay of withdrawal {existing.withdrawal_id} for vendor {vendor_id} (key={idempotency_key})")
            return existing, False

        with self.store.vendor_transaction(vendor_id) as session:
            # A retry may have landed while we waited for the vendor lock
            existing = self.store.find_withdrawal(vendor_id, idempotency_key, session=session)
            if existing is not None:
                return existing, False

            balance = self.calculator.compute_balance(vendor_id, session=session)
            if balance.current_balance < amount:
                logger.warning(
                    f"Withdrawal rejected for vendor {vendor_id}: requested {amount}, "
                    f"available {balance.current_balance} (key={idempotency_key})"
                )
                raise InsufficientFundsError(vendor_id, amount, balance.current_balance)

            candidate = WithdrawalRecord(
                withdrawal_id=uuid4(),
                vendor_id=vendor_id,
                amount=amount,
                idempotency_key=idempotency_key,
                status=WithdrawalStatus.PENDING,
                requested_at=utcnow(),
                payment_method=payment_method,
                notes=notes,
            )
            record = self.store.append_withdrawal(candidate, session=session)

        created = record.withdrawal_id == candidate.withdrawal_id
        if created:
            logger.info(
                f"Withdrawal {record.withdrawal_id} reserved {amount} for vendor {vendor_id} "
                f"(balance {balance.current_balance} -> {balance.current_balance - amount})"
            )
        return record, created

    def settle_withdrawal(
        self,
        withdrawal_id: UUID,
        outcome: SettlementOutcome,
        external_reference: Optional[str] = None,
        failure_reason: Optional[str] = None,
        processed_by: Optional[str] = None,
        settled_at: Optional[datetime] = None,
    ) -> WithdrawalRecord:
        outcome = SettlementOutcome(getattr(outcome, "value", outcome))
        current = self.store.get_withdrawal(withdrawal_id)
        if current is None:
            raise WithdrawalNotFoundError(f"Withdrawal {withdrawal_id} not found")

        try:
            with self.store.vendor_transaction(current.vendor_id) as session:
                record = self.store.update_withdrawal_status(
                    withdrawal_id,
                    outcome,
                    settled_at=settled_at,
                    external_reference=external_reference,
                    failure_reason=failure_reason,
                    processed_by=processed_by,
                    session=session,
                )
        except InvalidTransitionError as e:
            logger.error(
                f"Invalid settlement of withdrawal {withdrawal_id}: vendor={current.vendor_id} "
                f"amount={current.amount} status={e.current_status} requested={outcome.value} "
                f"settled_at={current.settled_at} reference={external_reference} processed_by={processed_by}"
            )
            raise

        if record.status == WithdrawalStatus.FAILED:
            logger.info(
                f"Withdrawal {withdrawal_id} failed for vendor {record.vendor_id}; "
                f"{record.amount} released back to balance (reason={failure_reason})"
            )
        else:
            logger.info(f"Withdrawal {withdrawal_id} completed for vendor {record.vendor_id} (reference={external_reference})")
        return record

    def _validate_amount(self, amount) -> Decimal:
        try:
            amount = Decimal(amount)
        except (InvalidOperation, TypeError, ValueError):
            raise InvalidAmountError(f"{amount!r} is not a valid amount")
        if not amount.is_finite() or amount <= 0:
            raise InvalidAmountError()
        try:
            to_minor_units(amount)
        except LedgerValidationError as e:
            raise InvalidAmountError(e.message)
        return amount
