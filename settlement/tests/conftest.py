"""Shared pytest fixtures for the settlement ledger tests"""
from datetime import datetime, timezone
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

from settlement.api import app, get_ledger_service
from settlement.config import Settings
from settlement.models import RecordEarningRequest
from settlement.service import LedgerService
from settlement.store import LedgerStore

INTERNAL_TOKEN = "test-internal-token"


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        DATABASE_URL="sqlite://",
        INTERNAL_API_TOKEN=INTERNAL_TOKEN,
        RECENT_PAYMENTS_LIMIT=3,
        HISTORY_MAX_LIMIT=50,
    )


@pytest.fixture
def store(tmp_path):
    """File-backed SQLite so worker threads share one database"""
    store = LedgerStore(f"sqlite:///{tmp_path / 'ledger.db'}")
    store.create_all()
    yield store
    store.engine.dispose()


@pytest.fixture
def service(store, test_settings) -> LedgerService:
    return LedgerService(store=store, settings=test_settings)


@pytest.fixture
def client(service):
    app.dependency_overrides[get_ledger_service] = lambda: service
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def earn(service):
    """Record an order earning for a vendor and return the stored event"""
    def _earn(vendor_id, order_id, gross, fee="0.00", occurred_at=None):
        return service.record_earning(RecordEarningRequest(
            vendor_id=vendor_id,
            order_id=order_id,
            gross_amount=Decimal(gross),
            platform_fee_amount=Decimal(fee),
            occurred_at=occurred_at or datetime.now(timezone.utc),
        )).earning
    return _earn
