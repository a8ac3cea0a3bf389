from decimal import Decimal
from typing import Optional


class LedgerServiceError(Exception):
    pass


class LedgerValidationError(LedgerServiceError):
    def __init__(self, field: str, message: str):
        super().__init__(f"{field}: {message}")
        self.field = field
        self.message = message


class InvalidAmountError(LedgerValidationError):
    def __init__(self, message: str = "amount must be strictly positive"):
        super().__init__("amount", message)


class InsufficientFundsError(LedgerServiceError):
    def __init__(self, vendor_id: str, requested: Decimal, available: Decimal):
        super().__init__(
            f"Insufficient funds for vendor {vendor_id}: requested {requested}, available {available}"
        )
        self.vendor_id = vendor_id
        self.requested = requested
        self.available = available


class WithdrawalNotFoundError(LedgerServiceError):
    pass


class InvalidTransitionError(LedgerServiceError):
    def __init__(self, withdrawal_id, current_status, requested_status: Optional[str] = None):
        super().__init__(
            f"Cannot move withdrawal {withdrawal_id} from {current_status} to {requested_status}"
        )
        self.withdrawal_id = withdrawal_id
        self.current_status = current_status
        self.requested_status = requested_status


class StorageUnavailableError(LedgerServiceError):
    pass
