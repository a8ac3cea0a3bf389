from typing import Optional

from sqlalchemy.orm import Session

from .models import VendorBalanceView, WithdrawalStatus, from_minor_units
from .store import LedgerStore

RESERVING_STATUSES = (WithdrawalStatus.PENDING, WithdrawalStatus.COMPLETED)


class BalanceCalculator:
    """Derives a vendor's balance from the event log; never writes."""

    def __init__(self, store: LedgerStore):
        self.store = store

    def compute_balance(self, vendor_id: str, session: Optional[Session] = None) -> VendorBalanceView:
        gross, fees, _net = self.store.earning_totals(vendor_id, session=session)
        withdrawn = self.store.withdrawal_total(vendor_id, RESERVING_STATUSES, session=session)
        return VendorBalanceView(
            total_earnings=from_minor_units(gross),
            platform_fees=from_minor_units(fees),
            total_withdrawn=from_minor_units(withdrawn),
            current_balance=from_minor_units(gross - fees - withdrawn),
        )
