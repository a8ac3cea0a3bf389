"""
Vendor Settlement Ledger

This package provides:
- Append-only order earnings with exactly-once accounting per order
- Balances derived from the event log (earnings - fees - reserved withdrawals)
- Idempotent withdrawal requests serialized per vendor
- Withdrawal lifecycle: pending → completed / failed
- Paginated history and dashboard summaries
"""

from .errors import (
    InsufficientFundsError,
    InvalidAmountError,
    InvalidTransitionError,
    LedgerServiceError,
    LedgerValidationError,
    StorageUnavailableError,
    WithdrawalNotFoundError,
)
from .models import (
    EarningEvent,
    SettlementOutcome,
    VendorBalanceView,
    WithdrawalRecord,
    WithdrawalStatus,
)
from .service import LedgerService
from .store import LedgerStore

__all__ = [
    "EarningEvent",
    "SettlementOutcome",
    "VendorBalanceView",
    "WithdrawalRecord",
    "WithdrawalStatus",
    "LedgerService",
    "LedgerStore",
    "LedgerServiceError",
    "LedgerValidationError",
    "InvalidAmountError",
    "InsufficientFundsError",
    "InvalidTransitionError",
    "WithdrawalNotFoundError",
    "StorageUnavailableError",
]
