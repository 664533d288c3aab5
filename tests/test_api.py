from __future__ import annotations

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from metered_credits.api.middleware import CreditDeductionMiddleware
from metered_credits.api.router import build_services, get_services, router
from metered_credits.config import CreditSettings
from metered_credits.db.memory import InMemoryDBManager
from metered_credits.models.rate_limit import RateLimitPolicy


def _services(tmp_path, **overrides):
    settings = CreditSettings(
        transaction_retry_delay_seconds=0,
        ledger_log_path=tmp_path / "ledger.log",
        **overrides,
    )
    return build_services(settings, db=InMemoryDBManager())


@pytest.fixture
def services(tmp_path):
    return _services(tmp_path)


@pytest.fixture
def client(services):
    app = FastAPI()
    app.include_router(router)
    app.dependency_overrides[get_services] = lambda: services
    with TestClient(app) as c:
        yield c


def test_account_lifecycle(client):
    created = client.post("/credits/accounts/user-1", json={"initial_credits": 50})
    assert created.status_code == 201
    assert created.json()["remaining_credits"] == 50

    added = client.post("/credits/add", json={"user_id": "user-1", "amount": 25})
    assert added.status_code == 200
    assert added.json()["remaining_credits"] == 75

    deducted = client.post(
        "/credits/deduct", json={"user_id": "user-1", "amount": 5, "operation": "tokens-used"}
    )
    assert deducted.json()["credits_deducted"] == 5

    balance = client.get("/credits/balance/user-1").json()["balance"]
    assert balance["available"] == 70
    assert balance["used"] == 5

    check = client.get("/credits/check/user-1", params={"required": 80}).json()
    assert check["has_enough"] is False
    assert check["available"] == 70

    history = client.get("/credits/history/user-1", params={"limit": 2}).json()
    assert [tx["amount"] for tx in history] == [-5, 25]


def test_errors_map_to_status_codes(client):
    client.post("/credits/accounts/user-1", json={"initial_credits": 3})

    short = client.post(
        "/credits/deduct", json={"user_id": "user-1", "amount": 5, "operation": "tokens-used"}
    )
    assert short.status_code == 402
    assert short.json()["detail"]["code"] == "INSUFFICIENT_CREDITS"

    assert client.get("/credits/balance/ghost").status_code == 404

    invalid = client.post("/credits/add", json={"user_id": "user-1", "amount": 0})
    assert invalid.status_code == 400


def test_reservation_routes(client):
    client.post("/credits/accounts/user-1", json={"initial_credits": 100})

    reserved = client.post(
        "/credits/reservations",
        json={"user_id": "user-1", "amount": 20, "operation": "chat-session", "reservation_id": "r-1"},
    )
    assert reserved.status_code == 201
    assert reserved.json()["remaining_credits"] == 80

    duplicate = client.post(
        "/credits/reservations",
        json={"user_id": "user-1", "amount": 1, "operation": "chat-session", "reservation_id": "r-1"},
    )
    assert duplicate.status_code == 409

    for bad_id in ("r.2", "$r-2", ""):
        rejected = client.post(
            "/credits/reservations",
            json={"user_id": "user-1", "amount": 1, "operation": "chat-session", "reservation_id": bad_id},
        )
        assert rejected.status_code == 422

    confirmed = client.post(
        "/credits/reservations/r-1/confirm",
        json={"user_id": "user-1", "actual_tokens": 3000, "operation": "chat-session"},
    )
    assert confirmed.status_code == 200
    assert confirmed.json()["remaining_credits"] == 97

    again = client.post(
        "/credits/reservations/r-1/release", json={"user_id": "user-1"}
    )
    assert again.status_code == 409

    missing = client.post(
        "/credits/reservations/nope/release", json={"user_id": "user-1"}
    )
    assert missing.status_code == 404


def test_rate_limit_routes(client, services):
    status = client.get("/credits/rate-limits/user-1/chat_message").json()
    assert status["remaining"] == 10

    client.portal.call(services.rate_limiter.check_and_increment, "user-1", "chat_message")
    assert client.get("/credits/rate-limits/user-1/chat_message").json()["remaining"] == 9

    assert client.delete("/credits/rate-limits/user-1/chat_message").status_code == 204
    assert client.get("/credits/rate-limits/user-1/chat_message").json()["remaining"] == 10

    swept = client.post("/credits/rate-limits/sweep")
    assert swept.status_code == 200
    assert swept.json()["cleaned_count"] == 0


def _metered_app(services) -> FastAPI:
    app = FastAPI()
    app.add_middleware(
        CreditDeductionMiddleware,
        guard=services.guard,
        skip_paths=("/api/health",),
    )

    @app.post("/api/chat")
    async def chat(body: dict):
        return {"reply": body.get("message", ""), "usage": {"total_tokens": 3000}}

    @app.post("/api/no-usage")
    async def no_usage():
        return {"reply": "ok"}

    @app.get("/api/health")
    async def health():
        return {"status": "ok"}

    return app


def test_middleware_confirms_usage_from_response(tmp_path):
    services = _services(tmp_path)
    with TestClient(_metered_app(services)) as client:
        client.portal.call(services.credit_ledger.provision_account, "user-1", 100)

        response = client.post(
            "/api/chat",
            json={"message": "hi"},
            headers={"X-User-Id": "user-1", "X-Estimated-Tokens": "20000"},
        )
        assert response.status_code == 200
        assert response.json()["reply"] == "hi"
        assert response.headers["X-Credits-Deducted"] == "3"
        assert response.headers["X-Credits-Remaining"] == "97"

        released = client.post("/api/no-usage", headers={"X-User-Id": "user-1"})
        assert released.status_code == 200
        assert "X-Credits-Deducted" not in released.headers
        assert released.headers["X-Credits-Remaining"] == "97"

        assert client.get("/api/health").status_code == 200


def test_middleware_rejections(tmp_path):
    services = _services(
        tmp_path,
        rate_limits={"chat_message": RateLimitPolicy(max_requests=2, window_ms=60_000)},
    )
    with TestClient(_metered_app(services)) as client:
        client.portal.call(services.credit_ledger.provision_account, "user-1", 1)

        assert client.post("/api/chat", json={}).status_code == 401

        broke = client.post(
            "/api/chat", json={}, headers={"X-User-Id": "user-1", "X-Estimated-Tokens": "5000"}
        )
        assert broke.status_code == 402
        assert broke.json()["code"] == "INSUFFICIENT_CREDITS"

        unknown = client.post("/api/chat", json={}, headers={"X-User-Id": "ghost"})
        assert unknown.status_code == 404

        headers = {"X-User-Id": "user-1", "X-Estimated-Tokens": "5000"}
        assert client.post("/api/chat", json={}, headers=headers).status_code == 402
        limited = client.post("/api/chat", json={}, headers=headers)
        assert limited.status_code == 429
        assert limited.headers["Retry-After"] == "60"
        assert limited.json()["code"] == "RATE_LIMIT_EXCEEDED"
