"""Report withdrawals stuck in pending.

Pending withdrawals are never expired automatically; they keep their funds
reserved until the settlement rail (or an operator) settles them. This module
only surfaces candidates for that follow-up.
"""
import logging
from datetime import datetime, timedelta
from typing import Optional

from .db import utcnow
from .models import WithdrawalRecord, WithdrawalStatus
from .store import LedgerStore, as_utc

logger = logging.getLogger(__name__)


def find_stale_withdrawals(
    store: LedgerStore,
    older_than: timedelta,
    now: Optional[datetime] = None,
) -> list[WithdrawalRecord]:
    cutoff = as_utc(now or utcnow()) - older_than
    stale = store.list_withdrawals(statuses=[WithdrawalStatus.PENDING], end=cutoff)
    for record in stale:
        logger.warning(
            f"Withdrawal {record.withdrawal_id} for vendor {record.vendor_id} pending since "
            f"{record.requested_at.isoformat()} ({record.amount} reserved)"
        )
    return stale
