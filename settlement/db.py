"""SQLAlchemy tables and session management for the settlement ledger"""
from datetime import datetime, timezone

from sqlalchemy import (
    BigInteger, Column, DateTime, Index, Integer, String, Text, UniqueConstraint, create_engine, event,
)
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

Base = declarative_base()

# Execution option marking sessions that write
WRITE_LOCK = "settlement_write_lock"


def utcnow():
    return datetime.now(timezone.utc)


class VendorAccount(Base):
    """One row per vendor; locked FOR UPDATE to serialize withdrawals across instances"""
    __tablename__ = "vendor_accounts"

    vendor_id = Column(String(64), primary_key=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    def __repr__(self):
        return f"<VendorAccount(vendor_id={self.vendor_id})>"


class EarningRow(Base):
    """Append-only order earning events"""
    __tablename__ = "earning_events"

    sequence = Column(Integer, primary_key=True, autoincrement=True)
    vendor_id = Column(String(64), nullable=False, index=True)
    order_id = Column(String(128), nullable=False)

    # Amounts in minor units (cents)
    gross_minor = Column(BigInteger, nullable=False)
    fee_minor = Column(BigInteger, nullable=False)
    net_minor = Column(BigInteger, nullable=False)

    description = Column(Text, nullable=True)
    occurred_at = Column(DateTime(timezone=True), nullable=False)
    recorded_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("vendor_id", "order_id", name="uq_earning_vendor_order"),
        Index("ix_earning_vendor_occurred", "vendor_id", "occurred_at", "sequence"),
    )

    def __repr__(self):
        return f"<EarningRow(vendor_id={self.vendor_id}, order_id={self.order_id}, net={self.net_minor})>"


class WithdrawalRow(Base):
    """Withdrawal requests; status is the only mutable column"""
    __tablename__ = "withdrawals"

    sequence = Column(Integer, primary_key=True, autoincrement=True)
    withdrawal_id = Column(String(36), unique=True, nullable=False, index=True)
    vendor_id = Column(String(64), nullable=False, index=True)
    amount_minor = Column(BigInteger, nullable=False)
    idempotency_key = Column(String(255), nullable=False)
    status = Column(String(16), nullable=False, index=True)  # 'pending', 'completed', 'failed'

    payment_method = Column(String(50), nullable=True)
    notes = Column(Text, nullable=True)
    external_reference = Column(String(255), nullable=True)
    failure_reason = Column(Text, nullable=True)
    processed_by = Column(String(64), nullable=True)

    requested_at = Column(DateTime(timezone=True), nullable=False)
    settled_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("vendor_id", "idempotency_key", name="uq_withdrawal_vendor_key"),
        Index("ix_withdrawal_vendor_requested", "vendor_id", "requested_at", "sequence"),
    )

    def __repr__(self):
        return f"<WithdrawalRow(withdrawal_id={self.withdrawal_id}, status={self.status}, amount={self.amount_minor})>"


def make_engine(database_url: str):
    """Create an engine; SQLite gets the thread and in-memory settings it needs"""
    if database_url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False, "timeout": 30}}
        if ":memory:" in database_url or database_url in ("sqlite://", "sqlite+pysqlite://"):
            kwargs["poolclass"] = StaticPool
        engine = create_engine(database_url, **kwargs)
        file_backed = "poolclass" not in kwargs

        @event.listens_for(engine, "connect")
        def _configure_sqlite(dbapi_connection, connection_record):
            dbapi_connection.isolation_level = None
            if file_backed:
                # Readers and the single writer do not block each other
                dbapi_connection.execute("PRAGMA journal_mode=WAL")

        # Write transactions take the lock at BEGIN so they never deadlock upgrading it
        @event.listens_for(engine, "begin")
        def _begin(conn):
            if conn.get_execution_options().get(WRITE_LOCK):
                conn.exec_driver_sql("BEGIN IMMEDIATE")
            else:
                conn.exec_driver_sql("BEGIN")

        return engine
    return create_engine(database_url, pool_pre_ping=True, pool_recycle=3600)


def make_session_factory(engine):
    return sessionmaker(autoflush=False, expire_on_commit=False, bind=engine)


def init_db(engine):
    """Create all tables"""
    Base.metadata.create_all(bind=engine)
