"""Durable ledger store: append-only earnings and withdrawals, per-vendor write serialization"""
import logging
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterable, Optional
from uuid import UUID

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session

from .config import settings
from .db import (
    WRITE_LOCK,
    EarningRow,
    VendorAccount,
    WithdrawalRow,
    init_db,
    make_engine,
    make_session_factory,
    utcnow,
)
from .errors import InvalidTransitionError, StorageUnavailableError, WithdrawalNotFoundError
from .models import (
    EarningEvent,
    WithdrawalRecord,
    WithdrawalStatus,
    earning_minor_units,
    from_minor_units,
    to_minor_units,
)

logger = logging.getLogger(__name__)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize to an aware UTC datetime; naive values are taken to be UTC already."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _earning_from_row(row: EarningRow) -> EarningEvent:
    return EarningEvent(
        vendor_id=row.vendor_id,
        order_id=row.order_id,
        gross_amount=from_minor_units(row.gross_minor),
        platform_fee_amount=from_minor_units(row.fee_minor),
        net_amount=from_minor_units(row.net_minor),
        occurred_at=as_utc(row.occurred_at),
        description=row.description,
        sequence=row.sequence,
        recorded_at=as_utc(row.recorded_at),
    )


def _withdrawal_from_row(row: WithdrawalRow) -> WithdrawalRecord:
    return WithdrawalRecord(
        withdrawal_id=UUID(row.withdrawal_id),
        vendor_id=row.vendor_id,
        amount=from_minor_units(row.amount_minor),
        idempotency_key=row.idempotency_key,
        status=WithdrawalStatus(row.status),
        requested_at=as_utc(row.requested_at),
        settled_at=as_utc(row.settled_at),
        payment_method=row.payment_method,
        notes=row.notes,
        external_reference=row.external_reference,
        failure_reason=row.failure_reason,
        processed_by=row.processed_by,
        sequence=row.sequence,
    )


def _window(column, start: Optional[datetime], end: Optional[datetime]) -> list:
    """Half-open [start, end) predicate on a timestamp column"""
    conditions = []
    if start is not None:
        conditions.append(column >= as_utc(start))
    if end is not None:
        conditions.append(column < as_utc(end))
    return conditions


class _VendorLocks:
    """Lazily created in-process lock per vendor id"""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}

    def get(self, vendor_id: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(vendor_id)
            if lock is None:
                lock = self._locks[vendor_id] = threading.Lock()
            return lock


class LedgerStore:
    def __init__(self, database_url: Optional[str] = None, engine=None):
        self.engine = engine if engine is not None else make_engine(database_url or settings.DATABASE_URL)
        self._session_factory = make_session_factory(self.engine)
        self._write_session_factory = make_session_factory(self.engine.execution_options(**{WRITE_LOCK: True}))
        self._locks = _VendorLocks()

    def create_all(self):
        init_db(self.engine)

    @contextmanager
    def session(self, write: bool = False):
        """
        One transaction; commits on success, maps connectivity failures to StorageUnavailableError.

        Only write transactions take the SQLite write lock at BEGIN, so reads
        never wait on another vendor's withdrawal.
        """
        session = (self._write_session_factory if write else self._session_factory)()
        try:
            yield session
            session.commit()
        except OperationalError as e:
            session.rollback()
            logger.error(f"Ledger store unavailable: {e}", exc_info=True)
            raise StorageUnavailableError("Ledger store could not be reached") from e
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    @contextmanager
    def _using(self, session: Optional[Session], write: bool = False):
        if session is not None:
            yield session
        else:
            with self.session(write=write) as own:
                yield own

    @contextmanager
    def vendor_transaction(self, vendor_id: str):
        """
        Serialize writers for one vendor.

        The in-process lock covers threads of this worker; the FOR UPDATE row lock
        covers other instances on databases that support it. Other vendors never wait.
        """
        self._ensure_account(vendor_id)
        with self._locks.get(vendor_id):
            with self.session(write=True) as session:
                session.execute(
                    select(VendorAccount)
                    .where(VendorAccount.vendor_id == vendor_id)
                    .with_for_update()
                )
                yield session

    def _ensure_account(self, vendor_id: str):
        with self.session() as session:
            if session.get(VendorAccount, vendor_id) is not None:
                return
        with self.session(write=True) as session:
            if session.get(VendorAccount, vendor_id) is not None:
                return
            session.add(VendorAccount(vendor_id=vendor_id, created_at=utcnow()))
            try:
                session.flush()
            except IntegrityError:
                # Another worker created it first
                session.rollback()

    # --- Earnings ---

    def append_earning(self, event: EarningEvent) -> EarningEvent:
        earning, _created = self.add_earning(event)
        return earning

    def add_earning(self, event: EarningEvent) -> tuple[EarningEvent, bool]:
        """
        Insert unless (vendor_id, order_id) exists; returns (stored event, created).

        Amounts are checked here so no append path can record an event whose
        fee exceeds its gross or whose net is not gross minus fee.
        """
        gross, fee, net = earning_minor_units(event.gross_amount, event.platform_fee_amount, event.net_amount)
        with self.session(write=True) as session:
            existing = self._find_earning(session, event.vendor_id, event.order_id)
            if existing is not None:
                logger.debug(f"Earning for order {event.order_id} already recorded for vendor {event.vendor_id}")
                return _earning_from_row(existing), False

            row = EarningRow(
                vendor_id=event.vendor_id,
                order_id=event.order_id,
                gross_minor=gross,
                fee_minor=fee,
                net_minor=net,
                description=event.description,
                occurred_at=as_utc(event.occurred_at),
                recorded_at=utcnow(),
            )
            session.add(row)
            try:
                session.flush()
            except IntegrityError:
                session.rollback()
                return _earning_from_row(self._find_earning(session, event.vendor_id, event.order_id)), False
            return _earning_from_row(row), True

    def _find_earning(self, session: Session, vendor_id: str, order_id: str) -> Optional[EarningRow]:
        return session.execute(
            select(EarningRow).where(EarningRow.vendor_id == vendor_id, EarningRow.order_id == order_id)
        ).scalar_one_or_none()

    def list_earnings(
        self,
        vendor_id: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        session: Optional[Session] = None,
    ) -> list[EarningEvent]:
        conditions = _window(EarningRow.occurred_at, start, end)
        if vendor_id is not None:
            conditions.append(EarningRow.vendor_id == vendor_id)
        stmt = select(EarningRow).where(*conditions).order_by(EarningRow.occurred_at, EarningRow.sequence)
        with self._using(session) as s:
            return [_earning_from_row(row) for row in s.execute(stmt).scalars()]

    def earning_totals(
        self,
        vendor_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        session: Optional[Session] = None,
    ) -> tuple[int, int, int]:
        """(gross, fee, net) in minor units"""
        stmt = select(
            func.coalesce(func.sum(EarningRow.gross_minor), 0),
            func.coalesce(func.sum(EarningRow.fee_minor), 0),
            func.coalesce(func.sum(EarningRow.net_minor), 0),
        ).where(EarningRow.vendor_id == vendor_id, *_window(EarningRow.occurred_at, start, end))
        with self._using(session) as s:
            gross, fee, net = s.execute(stmt).one()
        return int(gross), int(fee), int(net)

    # --- Withdrawals ---

    def append_withdrawal(self, record: WithdrawalRecord, session: Optional[Session] = None) -> WithdrawalRecord:
        with self._using(session, write=True) as s:
            existing = self._find_withdrawal(s, record.vendor_id, record.idempotency_key)
            if existing is not None:
                return _withdrawal_from_row(existing)

            row = WithdrawalRow(
                withdrawal_id=str(record.withdrawal_id),
                vendor_id=record.vendor_id,
                amount_minor=to_minor_units(record.amount),
                idempotency_key=record.idempotency_key,
                status=record.status.value,
                payment_method=record.payment_method,
                notes=record.notes,
                requested_at=as_utc(record.requested_at),
            )
            s.add(row)
            try:
                s.flush()
            except IntegrityError:
                # Lost a race against a concurrent retry with the same key
                s.rollback()
                return _withdrawal_from_row(self._find_withdrawal(s, record.vendor_id, record.idempotency_key))
            return _withdrawal_from_row(row)

    def _find_withdrawal(self, session: Session, vendor_id: str, idempotency_key: str) -> Optional[WithdrawalRow]:
        return session.execute(
            select(WithdrawalRow).where(
                WithdrawalRow.vendor_id == vendor_id,
                WithdrawalRow.idempotency_key == idempotency_key,
            )
        ).scalar_one_or_none()

    def find_withdrawal(
        self, vendor_id: str, idempotency_key: str, session: Optional[Session] = None
    ) -> Optional[WithdrawalRecord]:
        with self._using(session) as s:
            row = self._find_withdrawal(s, vendor_id, idempotency_key)
            return _withdrawal_from_row(row) if row is not None else None

    def get_withdrawal(self, withdrawal_id: UUID, session: Optional[Session] = None) -> Optional[WithdrawalRecord]:
        with self._using(session) as s:
            row = s.execute(
                select(WithdrawalRow)
                .where(WithdrawalRow.withdrawal_id == str(withdrawal_id))
                .execution_options(populate_existing=True)
            ).scalar_one_or_none()
            return _withdrawal_from_row(row) if row is not None else None

    def update_withdrawal_status(
        self,
        withdrawal_id: UUID,
        new_status,
        settled_at: Optional[datetime] = None,
        external_reference: Optional[str] = None,
        failure_reason: Optional[str] = None,
        processed_by: Optional[str] = None,
        session: Optional[Session] = None,
    ) -> WithdrawalRecord:
        """Compare-and-set pending -> completed/failed; terminal records never change."""
        target = WithdrawalStatus(getattr(new_status, "value", new_status))
        with self._using(session, write=True) as s:
            if target == WithdrawalStatus.PENDING:
                current = self.get_withdrawal(withdrawal_id, session=s)
                if current is None:
                    raise WithdrawalNotFoundError(f"Withdrawal {withdrawal_id} not found")
                raise InvalidTransitionError(withdrawal_id, current.status.value, target.value)

            result = s.execute(
                update(WithdrawalRow)
                .where(
                    WithdrawalRow.withdrawal_id == str(withdrawal_id),
                    WithdrawalRow.status == WithdrawalStatus.PENDING.value,
                )
                .values(
                    status=target.value,
                    settled_at=as_utc(settled_at) or utcnow(),
                    external_reference=external_reference,
                    failure_reason=failure_reason,
                    processed_by=processed_by,
                )
                .execution_options(synchronize_session=False)
            )
            current = self.get_withdrawal(withdrawal_id, session=s)
            if current is None:
                raise WithdrawalNotFoundError(f"Withdrawal {withdrawal_id} not found")
            if result.rowcount == 0:
                raise InvalidTransitionError(withdrawal_id, current.status.value, target.value)
            return current

    def _withdrawal_conditions(
        self,
        vendor_id: Optional[str],
        start: Optional[datetime],
        end: Optional[datetime],
        statuses: Optional[Iterable[WithdrawalStatus]],
        max_sequence: Optional[int],
    ) -> list:
        conditions = _window(WithdrawalRow.requested_at, start, end)
        if vendor_id is not None:
            conditions.append(WithdrawalRow.vendor_id == vendor_id)
        if statuses is not None:
            conditions.append(WithdrawalRow.status.in_([WithdrawalStatus(st).value for st in statuses]))
        if max_sequence is not None:
            conditions.append(WithdrawalRow.sequence <= max_sequence)
        return conditions

    def list_withdrawals(
        self,
        vendor_id: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        statuses: Optional[Iterable[WithdrawalStatus]] = None,
        max_sequence: Optional[int] = None,
        after: Optional[tuple[datetime, int]] = None,
        offset: int = 0,
        limit: Optional[int] = None,
        newest_first: bool = False,
        session: Optional[Session] = None,
    ) -> list[WithdrawalRecord]:
        conditions = self._withdrawal_conditions(vendor_id, start, end, statuses, max_sequence)
        if after is not None:
            after_at, after_sequence = as_utc(after[0]), after[1]
            conditions.append(or_(
                WithdrawalRow.requested_at > after_at,
                and_(WithdrawalRow.requested_at == after_at, WithdrawalRow.sequence > after_sequence),
            ))
        stmt = select(WithdrawalRow).where(*conditions)
        if newest_first:
            stmt = stmt.order_by(WithdrawalRow.requested_at.desc(), WithdrawalRow.sequence.desc())
        else:
            stmt = stmt.order_by(WithdrawalRow.requested_at, WithdrawalRow.sequence)
        if offset:
            stmt = stmt.offset(offset)
        if limit is not None:
            stmt = stmt.limit(limit)
        with self._using(session) as s:
            return [_withdrawal_from_row(row) for row in s.execute(stmt).scalars()]

    def count_withdrawals(
        self,
        vendor_id: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        statuses: Optional[Iterable[WithdrawalStatus]] = None,
        max_sequence: Optional[int] = None,
        session: Optional[Session] = None,
    ) -> int:
        conditions = self._withdrawal_conditions(vendor_id, start, end, statuses, max_sequence)
        stmt = select(func.count(WithdrawalRow.sequence)).where(*conditions)
        with self._using(session) as s:
            return int(s.execute(stmt).scalar_one())

    def withdrawal_total(
        self,
        vendor_id: str,
        statuses: Iterable[WithdrawalStatus],
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        session: Optional[Session] = None,
    ) -> int:
        """Sum of amounts in minor units for the given statuses"""
        conditions = self._withdrawal_conditions(vendor_id, start, end, statuses, None)
        stmt = select(func.coalesce(func.sum(WithdrawalRow.amount_minor), 0)).where(*conditions)
        with self._using(session) as s:
            return int(s.execute(stmt).scalar_one())

    def max_withdrawal_sequence(self, session: Optional[Session] = None) -> int:
        with self._using(session) as s:
            return int(s.execute(select(func.coalesce(func.max(WithdrawalRow.sequence), 0))).scalar_one())
