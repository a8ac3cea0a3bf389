"""
HTTP tests for the settlement ledger API
"""

from uuid import uuid4

import pytest

from settlement.errors import StorageUnavailableError

from conftest import INTERNAL_TOKEN


VENDOR = {"X-Vendor-Id": "vendor-101"}
OTHER_VENDOR = {"X-Vendor-Id": "vendor-202"}
INTERNAL = {"X-Internal-Token": INTERNAL_TOKEN}


def post_earning(client, order_id="ORD-1", gross="100.00", fee="10.00", vendor_id="vendor-101", **extra):
    return client.post("/internal/earnings", headers=INTERNAL, json={
        "vendorId": vendor_id,
        "orderId": order_id,
        "grossAmount": gross,
        "platformFeeAmount": fee,
        **extra,
    })


def post_withdrawal(client, amount, key, headers=VENDOR):
    return client.post("/withdrawals", headers=headers, json={"amount": amount, "idempotencyKey": key})


class TestIdentity:
    """Tests for caller identification"""

    def test_health_needs_no_identity(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_vendor_routes_require_vendor_header(self, client):
        response = client.get("/balance")

        assert response.status_code == 401
        assert response.json()["success"] is False

    def test_internal_routes_require_token(self, client):
        response = client.post("/internal/earnings", json={"vendorId": "v", "orderId": "o", "grossAmount": "1.00"})

        assert response.status_code == 401

    def test_wrong_internal_token_rejected(self, client):
        response = client.get("/internal/withdrawals", headers={"X-Internal-Token": "nope"})

        assert response.status_code == 401


class TestEarningsEndpoint:
    """Tests for POST /internal/earnings"""

    def test_record_then_replay(self, client):
        created = post_earning(client)
        replayed = post_earning(client)

        assert created.status_code == 201
        assert created.json()["earning"]["netAmount"] == "90.00"
        assert replayed.status_code == 200
        assert replayed.json()["earning"]["sequence"] == created.json()["earning"]["sequence"]

    def test_inconsistent_net_rejected(self, client):
        response = post_earning(client, netAmount="95.00")

        assert response.status_code == 400
        assert response.json()["field"] == "netAmount"


class TestBalanceEndpoint:
    """Tests for GET /balance"""

    def test_balance_amounts_are_strings(self, client):
        post_earning(client)

        body = client.get("/balance", headers=VENDOR).json()

        assert body == {
            "success": True,
            "totalEarnings": "100.00",
            "platformFees": "10.00",
            "totalWithdrawn": "0.00",
            "currentBalance": "90.00",
        }

    def test_unknown_vendor_zero(self, client):
        body = client.get("/balance", headers={"X-Vendor-Id": "new-vendor"}).json()

        assert body["currentBalance"] == "0.00"


class TestWithdrawalEndpoints:
    """Tests for POST /withdrawals and GET /{paymentId}"""

    def test_request_then_replay(self, client):
        post_earning(client)

        created = post_withdrawal(client, "40.00", "payout-1")
        replayed = post_withdrawal(client, "40.00", "payout-1")

        assert created.status_code == 201
        payment = created.json()["payment"]
        assert payment["status"] == "pending"
        assert payment["amount"] == "40.00"
        assert replayed.status_code == 200
        assert replayed.json()["payment"]["withdrawalId"] == payment["withdrawalId"]

    def test_insufficient_funds_is_conflict(self, client):
        post_earning(client)

        response = post_withdrawal(client, "90.01", "too-much")

        assert response.status_code == 409
        assert response.json()["success"] is False
        assert client.get("/balance", headers=VENDOR).json()["currentBalance"] == "90.00"

    @pytest.mark.parametrize("amount", ["0", "-1.00", "1.005"])
    def test_invalid_amount_is_bad_request(self, client, amount):
        post_earning(client)

        response = post_withdrawal(client, amount, "bad")

        assert response.status_code == 400
        assert response.json()["field"] == "amount"

    def test_payment_detail(self, client):
        post_earning(client)
        withdrawal_id = post_withdrawal(client, "10.00", "payout-1").json()["payment"]["withdrawalId"]

        response = client.get(f"/{withdrawal_id}", headers=VENDOR)

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["withdrawalId"] == withdrawal_id
        assert body["idempotencyKey"] == "payout-1"

    def test_other_vendors_payment_is_not_found(self, client):
        post_earning(client)
        withdrawal_id = post_withdrawal(client, "10.00", "payout-1").json()["payment"]["withdrawalId"]

        response = client.get(f"/{withdrawal_id}", headers=OTHER_VENDOR)

        assert response.status_code == 404
        assert response.json()["success"] is False

    @pytest.mark.parametrize("payment_id", ["not-a-uuid", str(uuid4())])
    def test_unknown_payment_is_not_found(self, client, payment_id):
        response = client.get(f"/{payment_id}", headers=VENDOR)

        assert response.status_code == 404
        assert response.json()["success"] is False


class TestSettlementEndpoint:
    """Tests for POST /internal/withdrawals/{id}/settle"""

    def test_settle_once(self, client):
        post_earning(client)
        withdrawal_id = post_withdrawal(client, "90.00", "k1").json()["payment"]["withdrawalId"]

        failed = client.post(
            f"/internal/withdrawals/{withdrawal_id}/settle",
            headers=INTERNAL,
            json={"outcome": "failed", "failureReason": "Account closed"},
        )
        again = client.post(
            f"/internal/withdrawals/{withdrawal_id}/settle",
            headers=INTERNAL,
            json={"outcome": "completed"},
        )

        assert failed.status_code == 200
        assert failed.json()["payment"]["status"] == "failed"
        assert again.status_code == 409
        assert client.get("/balance", headers=VENDOR).json()["currentBalance"] == "90.00"

    def test_settle_unknown(self, client):
        response = client.post(
            f"/internal/withdrawals/{uuid4()}/settle",
            headers=INTERNAL,
            json={"outcome": "completed"},
        )

        assert response.status_code == 404

    def test_stale_report(self, client):
        post_earning(client)
        post_withdrawal(client, "10.00", "k1")

        response = client.get("/internal/withdrawals/stale", headers=INTERNAL, params={"olderThanHours": 0})

        assert response.status_code == 200
        body = response.json()
        assert body["olderThanHours"] == 0
        assert len(body["payments"]) == 1

    def test_back_office_listing(self, client):
        post_earning(client)
        post_earning(client, order_id="ORD-2", vendor_id="vendor-202")
        post_withdrawal(client, "10.00", "k1")
        post_withdrawal(client, "10.00", "k1", headers=OTHER_VENDOR)

        body = client.get("/internal/withdrawals", headers=INTERNAL, params={"vendorId": "vendor-202"}).json()

        assert body["pagination"]["totalItems"] == 1
        assert body["payments"][0]["vendorId"] == "vendor-202"


class TestHistoryEndpoint:
    """Tests for GET /history"""

    @pytest.fixture
    def history(self, client):
        post_earning(client)
        for i in range(25):
            post_withdrawal(client, "1.00", f"payout-{i}")

    def test_pagination_shape(self, client, history):
        body = client.get("/history", headers=VENDOR, params={"page": 3, "limit": 10}).json()

        assert body["success"] is True
        assert len(body["payments"]) == 5
        assert body["pagination"]["totalPages"] == 3
        assert body["pagination"]["currentPage"] == 3
        assert body["pagination"]["totalItems"] == 25
        assert body["pagination"]["nextCursor"] is None

    def test_cursor_follow_up(self, client, history):
        first = client.get("/history", headers=VENDOR, params={"limit": 10}).json()
        second = client.get(
            "/history", headers=VENDOR, params={"limit": 10, "cursor": first["pagination"]["nextCursor"]}
        ).json()
        by_page = client.get("/history", headers=VENDOR, params={"page": 2, "limit": 10}).json()

        assert [p["withdrawalId"] for p in second["payments"]] == [p["withdrawalId"] for p in by_page["payments"]]
        assert second["pagination"]["currentPage"] is None
        assert by_page["pagination"]["currentPage"] == 2

    def test_zero_limit_rejected(self, client):
        response = client.get("/history", headers=VENDOR, params={"limit": 0})

        assert response.status_code == 400
        assert response.json()["field"] == "limit"

    def test_reversed_window_rejected(self, client):
        response = client.get(
            "/history", headers=VENDOR, params={"startDate": "2025-06-01", "endDate": "2025-05-01"}
        )

        assert response.status_code == 400
        assert response.json()["field"] == "startDate"

    def test_bad_date_rejected(self, client):
        response = client.get("/history", headers=VENDOR, params={"startDate": "yesterday"})

        assert response.status_code == 400
        assert response.json()["field"] == "startDate"

    def test_date_only_end_includes_that_day(self, client, history):
        today = client.get("/history", headers=VENDOR, params={"limit": 1}).json()["payments"][0]["requestedAt"][:10]

        body = client.get("/history", headers=VENDOR, params={"startDate": today, "endDate": today}).json()

        assert body["pagination"]["totalItems"] == 25


class TestSummaryEndpoint:
    """Tests for GET /summary and /summary/rollup"""

    def test_summary_shape(self, client):
        post_earning(client)
        post_withdrawal(client, "20.00", "k1")

        body = client.get("/summary", headers=VENDOR).json()

        assert body["success"] is True
        assert body["totalEarnings"] == "100.00"
        assert body["platformFees"] == "10.00"
        assert body["totalWithdrawn"] == "20.00"
        assert body["currentBalance"] == "70.00"
        assert body["pendingAmount"] == "20.00"
        assert len(body["recentPayments"]) == 1

    def test_rollup(self, client):
        post_earning(client, occurredAt="2025-05-05T10:00:00Z")
        post_earning(client, order_id="ORD-2", occurredAt="2025-06-05T10:00:00Z")

        body = client.get("/summary/rollup", headers=VENDOR, params={"granularity": "month"}).json()

        assert body["granularity"] == "month"
        assert [b["totalEarnings"] for b in body["buckets"]] == ["100.00", "100.00"]

    def test_summary_payment_counts(self, client):
        post_earning(client)
        post_withdrawal(client, "20.00", "k1")
        post_withdrawal(client, "5.00", "k2")

        body = client.get("/summary", headers=VENDOR).json()

        assert body["pendingCount"] == 2
        assert body["totalPayments"] == 2
        assert body["paymentCount"] == 0
        assert body["lastPaymentAmount"] == "5.00"
        assert body["lastPaymentDate"] is not None

    def test_unknown_granularity_rejected(self, client):
        response = client.get("/summary/rollup", headers=VENDOR, params={"granularity": "decade"})

        assert response.status_code == 400
        assert response.json()["success"] is False
        assert response.json()["field"] == "granularity"


class TestMalformedInput:
    """Unparseable parameters and bodies use the standard error envelope"""

    @pytest.mark.parametrize("params,field", [
        ({"page": "abc"}, "page"),
        ({"limit": "ten"}, "limit"),
    ])
    def test_non_integer_paging(self, client, params, field):
        response = client.get("/history", headers=VENDOR, params=params)

        assert response.status_code == 400
        body = response.json()
        assert body["success"] is False
        assert body["field"] == field
        assert body["message"]

    def test_non_numeric_amount(self, client):
        response = post_withdrawal(client, "lots", "k1")

        assert response.status_code == 400
        assert response.json()["field"] == "amount"

    def test_missing_idempotency_key(self, client):
        response = client.post("/withdrawals", headers=VENDOR, json={"amount": "1.00"})

        assert response.status_code == 400
        assert response.json()["field"] == "idempotencyKey"

    def test_unknown_settlement_outcome(self, client):
        response = client.post(
            f"/internal/withdrawals/{uuid4()}/settle",
            headers=INTERNAL,
            json={"outcome": "refunded"},
        )

        assert response.status_code == 400
        assert response.json()["field"] == "outcome"


class TestStorageOutage:
    """Storage failures surface as 503 with a retry hint"""

    def test_outage_is_service_unavailable(self, client, service, monkeypatch):
        def unavailable(vendor_id, session=None):
            raise StorageUnavailableError("Ledger store could not be reached")

        monkeypatch.setattr(service.calculator, "compute_balance", unavailable)

        response = client.get("/balance", headers=VENDOR)

        assert response.status_code == 503
        assert "Retry-After" in response.headers
        assert response.json()["success"] is False
