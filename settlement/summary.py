from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Optional

from .balance import RESERVING_STATUSES, BalanceCalculator
from .config import Settings, settings as default_settings
from .history import validate_window
from .models import (
    Granularity,
    LedgerSummary,
    SummaryBucket,
    ZERO,
    WithdrawalStatus,
    from_minor_units,
    to_minor_units,
)
from .store import LedgerStore, as_utc


def bucket_start(moment: datetime, granularity: Granularity) -> Optional[datetime]:
    """UTC start of the day/week (Monday)/month containing moment; None for all-time."""
    moment = as_utc(moment)
    day = datetime(moment.year, moment.month, moment.day, tzinfo=timezone.utc)
    if granularity == Granularity.DAY:
        return day
    if granularity == Granularity.WEEK:
        return day - timedelta(days=day.weekday())
    if granularity == Granularity.MONTH:
        return day.replace(day=1)
    return None


class SummaryAggregator:
    def __init__(
        self,
        store: LedgerStore,
        calculator: Optional[BalanceCalculator] = None,
        settings: Optional[Settings] = None,
    ):
        self.store = store
        self.calculator = calculator or BalanceCalculator(store)
        self.settings = settings or default_settings

    def summarize(
        self,
        vendor_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> LedgerSummary:
        """
        Windowed totals plus a present-moment balance snapshot.

        current_balance ignores the window, so the identity
        current_balance == total_earnings - platform_fees - total_withdrawn
        only holds when no window is given.
        """
        validate_window(start, end)
        with self.store.session() as session:
            gross, fees, _net = self.store.earning_totals(vendor_id, start, end, session=session)
            withdrawn = self.store.withdrawal_total(vendor_id, RESERVING_STATUSES, start, end, session=session)
            pending = self.store.withdrawal_total(vendor_id, [WithdrawalStatus.PENDING], start, end, session=session)
            completed_count = self.store.count_withdrawals(
                vendor_id, start, end, statuses=[WithdrawalStatus.COMPLETED], session=session
            )
            pending_count = self.store.count_withdrawals(
                vendor_id, start, end, statuses=[WithdrawalStatus.PENDING], session=session
            )
            total_payments = self.store.count_withdrawals(vendor_id, start, end, session=session)
            latest = self.store.list_withdrawals(vendor_id, start, end, limit=1, newest_first=True, session=session)
            balance = self.calculator.compute_balance(vendor_id, session=session)
            recent = self.store.list_withdrawals(
                vendor_id,
                limit=self.settings.RECENT_PAYMENTS_LIMIT,
                newest_first=True,
                session=session,
            )

        return LedgerSummary(
            total_earnings=from_minor_units(gross),
            platform_fees=from_minor_units(fees),
            total_withdrawn=from_minor_units(withdrawn),
            current_balance=balance.current_balance,
            pending_amount=from_minor_units(pending),
            payment_count=completed_count,
            pending_count=pending_count,
            total_payments=total_payments,
            last_payment_date=latest[0].requested_at if latest else None,
            last_payment_amount=latest[0].amount if latest else ZERO,
            recent_payments=recent,
        )

    def rollup(
        self,
        vendor_id: str,
        granularity: Granularity = Granularity.ALL,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> list[SummaryBucket]:
        granularity = Granularity(granularity)
        validate_window(start, end)
        with self.store.session() as session:
            earnings = self.store.list_earnings(vendor_id, start, end, session=session)
            withdrawals = self.store.list_withdrawals(
                vendor_id, start, end, statuses=RESERVING_STATUSES, session=session
            )

        # key -> [gross, fee, net, withdrawn] in minor units
        totals = defaultdict(lambda: [0, 0, 0, 0])
        for event in earnings:
            row = totals[bucket_start(event.occurred_at, granularity)]
            row[0] += to_minor_units(event.gross_amount)
            row[1] += to_minor_units(event.platform_fee_amount)
            row[2] += to_minor_units(event.net_amount)
        for record in withdrawals:
            totals[bucket_start(record.requested_at, granularity)][3] += to_minor_units(record.amount)

        epoch = datetime.min.replace(tzinfo=timezone.utc)
        return [
            SummaryBucket(
                period_start=key,
                total_earnings=from_minor_units(gross),
                platform_fees=from_minor_units(fee),
                net_earnings=from_minor_units(net),
                total_withdrawn=from_minor_units(withdrawn),
            )
            for key, (gross, fee, net, withdrawn) in sorted(totals.items(), key=lambda item: item[0] or epoch)
        ]
