"""
API tests for the credit guard endpoints.

Requests go through the full FastAPI app with the database dependency bound
to the per-test SQLite ledger.
"""

from uuid import uuid4

from httpx import AsyncClient


async def _create_funded(client: AsyncClient, account_id: str = "org-api", amount: int = 100):
    response = await client.post("/v1/accounts", json={"account_id": account_id})
    assert response.status_code == 201
    response = await client.post(
        "/v1/credits/deposit", json={"account_id": account_id, "amount_minor": amount}
    )
    assert response.status_code == 201
    return account_id


class TestAuthentication:
    """Service role key enforcement."""

    async def test_missing_key_rejected(self, client: AsyncClient):
        response = await client.get(
            "/v1/accounts/org-api/balance", headers={"X-API-Key": ""}
        )

        assert response.status_code == 401
        assert response.headers["WWW-Authenticate"] == "ApiKey"

    async def test_wrong_key_rejected(self, client: AsyncClient):
        response = await client.post(
            "/v1/credits/reserve",
            json={"account_id": "org-api"},
            headers={"X-API-Key": "not-the-key"},
        )

        assert response.status_code == 401

    async def test_health_needs_no_key(self, client: AsyncClient):
        response = await client.get("/health", headers={"X-API-Key": ""})

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
        assert response.json()["database"] == "connected"


class TestServiceEndpoints:
    """Root and metrics."""

    async def test_root(self, client: AsyncClient):
        response = await client.get("/")

        assert response.status_code == 200
        assert response.json()["status"] == "running"

    async def test_request_id_echoed(self, client: AsyncClient):
        response = await client.get("/", headers={"X-Request-ID": "req-42"})

        assert response.headers["X-Request-ID"] == "req-42"

    async def test_metrics_label_by_route_template(self, client: AsyncClient):
        await client.get("/v1/accounts/org-label-check/balance")

        response = await client.get("/metrics")

        assert 'endpoint="/v1/accounts/{account_id}/balance"' in response.text
        assert "org-label-check" not in response.text

    async def test_metrics_exposed(self, client: AsyncClient):
        await client.get("/")

        response = await client.get("/metrics")

        assert response.status_code == 200
        assert "creditguard_http_requests_total" in response.text


class TestAccountEndpoints:
    """Account lifecycle endpoints."""

    async def test_create_account(self, client: AsyncClient):
        response = await client.post(
            "/v1/accounts", json={"account_id": "org-new", "cost_per_minute_minor": 20}
        )

        assert response.status_code == 201
        body = response.json()
        assert body["account_id"] == "org-new"
        assert body["available_minor"] == 0
        assert body["cost_per_minute_minor"] == 20

    async def test_balance_of_unknown_account(self, client: AsyncClient):
        response = await client.get("/v1/accounts/org-missing/balance")

        assert response.status_code == 404

    async def test_balance(self, client: AsyncClient):
        account_id = await _create_funded(client)

        response = await client.get(f"/v1/accounts/{account_id}/balance")

        assert response.status_code == 200
        body = response.json()
        assert body["available_minor"] == 100
        assert body["reserved_minor"] == 0
        assert body["total_minor"] == 100

    async def test_status(self, client: AsyncClient):
        account_id = await _create_funded(client)

        response = await client.get(f"/v1/accounts/{account_id}/status")

        assert response.status_code == 200
        assert response.json()["minutes_remaining"] == 6
        assert response.json()["active_reservations"] == 0

    async def test_update_settings(self, client: AsyncClient):
        account_id = await _create_funded(client)

        response = await client.patch(
            f"/v1/accounts/{account_id}/settings",
            json={"auto_recharge_enabled": True, "auto_recharge_amount_minor": 500},
        )

        assert response.status_code == 200
        assert response.json()["updated"] == [
            "auto_recharge_enabled",
            "auto_recharge_amount_minor",
        ]

        recharge = await client.get(f"/v1/accounts/{account_id}/auto-recharge")
        assert recharge.status_code == 200
        assert recharge.json()["needs_recharge"] is True
        assert recharge.json()["recharge_amount_minor"] == 500

    async def test_update_settings_rejects_negative(self, client: AsyncClient):
        account_id = await _create_funded(client)

        response = await client.patch(
            f"/v1/accounts/{account_id}/settings", json={"cost_per_minute_minor": -5}
        )

        assert response.status_code == 422

    async def test_transactions(self, client: AsyncClient):
        account_id = await _create_funded(client)
        await client.post("/v1/credits/reserve", json={"account_id": account_id})

        response = await client.get(
            f"/v1/accounts/{account_id}/transactions", params={"limit": 1}
        )

        assert response.status_code == 200
        body = response.json()
        assert body["total_count"] == 2
        assert body["has_more"] is True
        assert body["transactions"][0]["transaction_type"] == "reservation"

    async def test_transactions_limit_bounds(self, client: AsyncClient):
        account_id = await _create_funded(client)

        response = await client.get(
            f"/v1/accounts/{account_id}/transactions", params={"limit": 101}
        )

        assert response.status_code == 422


class TestDepositEndpoint:
    """Credit top-ups."""

    async def test_duplicate_key_conflicts(self, client: AsyncClient):
        account_id = await _create_funded(client)
        payload = {"account_id": account_id, "amount_minor": 50, "idempotency_key": "pay-9"}

        first = await client.post("/v1/credits/deposit", json=payload)
        second = await client.post("/v1/credits/deposit", json=payload)

        assert first.status_code == 201
        assert second.status_code == 409
        assert second.headers["X-Existing-Transaction-ID"] == first.json()["transaction_id"]

    async def test_unknown_account(self, client: AsyncClient):
        response = await client.post(
            "/v1/credits/deposit", json={"account_id": "org-missing", "amount_minor": 5}
        )

        assert response.status_code == 404

    async def test_non_positive_amount(self, client: AsyncClient):
        response = await client.post(
            "/v1/credits/deposit", json={"account_id": "org-api", "amount_minor": 0}
        )

        assert response.status_code == 422


class TestGuardEndpoints:
    """Check, reserve, finalize, and release."""

    async def test_check(self, client: AsyncClient):
        account_id = await _create_funded(client)

        ok = await client.post("/v1/credits/check", json={"account_id": account_id})
        short = await client.post(
            "/v1/credits/check",
            json={"account_id": account_id, "estimated_amount_minor": 500},
        )

        assert ok.status_code == 200
        assert ok.json()["can_make_call"] is True
        assert ok.json()["required_minor"] == 15
        assert short.status_code == 402

    async def test_check_batch(self, client: AsyncClient):
        account_id = await _create_funded(client)

        response = await client.post(
            "/v1/credits/check-batch", json={"account_id": account_id, "call_count": 10}
        )

        assert response.status_code == 200
        assert response.json()["can_proceed"] is False
        assert response.json()["calls_affordable"] == 3

    async def test_reserve_uses_default_estimate(self, client: AsyncClient):
        account_id = await _create_funded(client)

        response = await client.post(
            "/v1/credits/reserve", json={"account_id": account_id, "call_id": "call-1"}
        )

        assert response.status_code == 201
        body = response.json()
        assert body["amount_minor"] == 15
        assert body["status"] == "active"
        assert body["available_minor"] == 85
        assert body["reserved_minor"] == 15

    async def test_reserve_insufficient(self, client: AsyncClient):
        account_id = await _create_funded(client, amount=10)

        response = await client.post("/v1/credits/reserve", json={"account_id": account_id})

        assert response.status_code == 402

    async def test_reserve_call_id_of_other_account(self, client: AsyncClient):
        first = await _create_funded(client, "org-a")
        second = await _create_funded(client, "org-b")
        await client.post("/v1/credits/reserve", json={"account_id": first, "call_id": "c-9"})

        response = await client.post(
            "/v1/credits/reserve", json={"account_id": second, "call_id": "c-9"}
        )

        assert response.status_code == 409

    async def test_blank_account_id_rejected(self, client: AsyncClient):
        response = await client.post("/v1/credits/reserve", json={"account_id": "   "})

        assert response.status_code == 400

    async def test_finalize_and_replay(self, client: AsyncClient):
        account_id = await _create_funded(client)
        reserved = await client.post(
            "/v1/credits/reserve",
            json={"account_id": account_id, "amount_minor": 10, "call_id": "call-f"},
        )
        payload = {
            "account_id": account_id,
            "call_id": "call-f",
            "reservation_id": reserved.json()["reservation_id"],
            "actual_cost_minor": 7,
        }

        first = await client.post("/v1/credits/finalize", json=payload)
        second = await client.post("/v1/credits/finalize", json=payload)

        assert first.status_code == 200
        assert first.json()["replayed"] is False
        assert first.json()["refunded_minor"] == 3
        assert first.json()["available_minor"] == 93
        assert second.status_code == 200
        assert second.json()["replayed"] is True
        assert second.json()["finalized_at"] == first.json()["finalized_at"]

        balance = await client.get(f"/v1/accounts/{account_id}/balance")
        assert balance.json()["available_minor"] == 93
        assert balance.json()["reserved_minor"] == 0

    async def test_finalize_by_duration(self, client: AsyncClient):
        account_id = await _create_funded(client)
        await client.post(
            "/v1/credits/reserve",
            json={"account_id": account_id, "amount_minor": 15, "call_id": "call-d"},
        )

        response = await client.post(
            "/v1/credits/finalize",
            json={
                "account_id": account_id,
                "call_id": "call-d",
                "duration_seconds": 61,
                "provider_cost_minor": 5,
            },
        )

        assert response.status_code == 200
        assert response.json()["actual_cost_minor"] == 17
        assert response.json()["margin_minor"] == 12

    async def test_finalize_needs_exactly_one_cost_source(self, client: AsyncClient):
        response = await client.post(
            "/v1/credits/finalize",
            json={
                "account_id": "org-api",
                "call_id": "call-x",
                "actual_cost_minor": 5,
                "duration_seconds": 30,
            },
        )

        assert response.status_code == 422

    async def test_finalize_unknown_reservation(self, client: AsyncClient):
        account_id = await _create_funded(client)

        response = await client.post(
            "/v1/credits/finalize",
            json={
                "account_id": account_id,
                "call_id": "call-ghost",
                "reservation_id": str(uuid4()),
                "actual_cost_minor": 5,
            },
        )

        assert response.status_code == 404

    async def test_release_is_idempotent(self, client: AsyncClient):
        account_id = await _create_funded(client)
        reserved = await client.post(
            "/v1/credits/reserve", json={"account_id": account_id, "amount_minor": 10}
        )
        payload = {"account_id": account_id, "reservation_id": reserved.json()["reservation_id"]}

        first = await client.post("/v1/credits/release", json=payload)
        second = await client.post("/v1/credits/release", json=payload)

        assert first.status_code == 200
        assert first.json()["status"] == "released"
        assert first.json()["available_minor"] == 100
        assert second.status_code == 200
        assert second.json()["replayed"] is True


class TestUsageEndpoint:
    """Usage reporting."""

    async def test_usage_summary(self, client: AsyncClient):
        account_id = await _create_funded(client)
        await client.post(
            "/v1/credits/reserve",
            json={"account_id": account_id, "amount_minor": 20, "call_id": "call-u"},
        )
        await client.post(
            "/v1/credits/finalize",
            json={
                "account_id": account_id,
                "call_id": "call-u",
                "duration_seconds": 61,
                "provider_cost_minor": 5,
            },
        )

        response = await client.get(f"/v1/accounts/{account_id}/usage", params={"days": 7})

        assert response.status_code == 200
        body = response.json()
        assert body["days"] == 7
        assert body["total_calls"] == 1
        assert body["billed_cost_minor"] == 17
        assert body["margin_percent"] == 71
        assert body["daily"][0]["total_minutes"] == 2
        assert body["daily"][0]["average_call_seconds"] == 61

    async def test_usage_of_unknown_account(self, client: AsyncClient):
        response = await client.get("/v1/accounts/org-missing/usage")

        assert response.status_code == 404

    async def test_usage_days_bounds(self, client: AsyncClient):
        account_id = await _create_funded(client)

        response = await client.get(f"/v1/accounts/{account_id}/usage", params={"days": 366})

        assert response.status_code == 422
