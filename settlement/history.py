"""
Paginated withdrawal history.

Count and page are read in one session and bounded by the highest withdrawal
sequence visible when the query starts, so rows appended mid-request never
shift a page. Callers that walk the whole history can follow ``next_cursor``,
which resumes after the last (requested_at, sequence) pair instead of relying
on offsets; such pages report no currentPage.
"""
import base64
import binascii
import math
from datetime import datetime
from typing import Optional

from .config import Settings, settings as default_settings
from .errors import LedgerValidationError
from .models import HistoryPage, Pagination, WithdrawalRecord, WithdrawalStatus
from .store import LedgerStore, as_utc


def encode_cursor(record: WithdrawalRecord) -> str:
    raw = f"{as_utc(record.requested_at).isoformat()}|{record.sequence}"
    return base64.urlsafe_b64encode(raw.encode()).decode().rstrip("=")


def decode_cursor(cursor: str) -> tuple[datetime, int]:
    try:
        padded = cursor + "=" * (-len(cursor) % 4)
        raw = base64.urlsafe_b64decode(padded.encode()).decode()
        requested_at, sequence = raw.rsplit("|", 1)
        return as_utc(datetime.fromisoformat(requested_at)), int(sequence)
    except (binascii.Error, UnicodeDecodeError, ValueError):
        raise LedgerValidationError("cursor", "is not a valid history cursor")


def validate_window(start: Optional[datetime], end: Optional[datetime]):
    if start is not None and end is not None and as_utc(start) > as_utc(end):
        raise LedgerValidationError("startDate", "must not be after endDate")


class HistoryQueryService:
    def __init__(self, store: LedgerStore, settings: Optional[Settings] = None):
        self.store = store
        self.settings = settings or default_settings

    def _validate_paging(self, page: int, limit: int):
        if page is None or page < 1:
            raise LedgerValidationError("page", "must be a positive integer")
        if limit is None or limit < 1 or limit > self.settings.HISTORY_MAX_LIMIT:
            raise LedgerValidationError("limit", f"must be between 1 and {self.settings.HISTORY_MAX_LIMIT}")

    def list_history(
        self,
        vendor_id: str,
        page: int = 1,
        limit: Optional[int] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        cursor: Optional[str] = None,
    ) -> HistoryPage:
        return self._page(vendor_id, page, limit, start, end, cursor=cursor)

    def list_all(
        self,
        page: int = 1,
        limit: Optional[int] = None,
        status: Optional[WithdrawalStatus] = None,
        vendor_id: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> HistoryPage:
        """Cross-vendor listing for back-office screens"""
        statuses = [status] if status is not None else None
        return self._page(vendor_id, page, limit, start, end, statuses=statuses)

    def _page(self, vendor_id, page, limit, start, end, statuses=None, cursor=None) -> HistoryPage:
        if limit is None:
            limit = self.settings.HISTORY_DEFAULT_LIMIT
        self._validate_paging(page, limit)
        validate_window(start, end)
        after = decode_cursor(cursor) if cursor else None

        with self.store.session() as session:
            high_water = self.store.max_withdrawal_sequence(session=session)
            total_items = self.store.count_withdrawals(
                vendor_id, start, end, statuses=statuses, max_sequence=high_water, session=session
            )
            # One extra row tells us whether another page exists
            rows = self.store.list_withdrawals(
                vendor_id,
                start,
                end,
                statuses=statuses,
                max_sequence=high_water,
                after=after,
                offset=0 if after else (page - 1) * limit,
                limit=limit + 1,
                session=session,
            )

        payments = rows[:limit]
        next_cursor = encode_cursor(payments[-1]) if len(rows) > limit else None
        return HistoryPage(
            payments=payments,
            pagination=Pagination(
                total_pages=math.ceil(total_items / limit),
                current_page=None if after else page,
                total_items=total_items,
                next_cursor=next_cursor,
            ),
        )
