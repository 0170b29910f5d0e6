"""
Integration tests for the Game Economy API
Tests end-to-end flows using FastAPI TestClient
"""

import time

import jwt
import pytest
from fastapi.testclient import TestClient

from game_economy.amounts import Amount, Currency
from game_economy.api import create_app
from game_economy.config import EconomyConfig
from game_economy.storage import InMemoryStorage
from game_economy.system import EconomySystem


SECRET = "test-secret"


def make_system(**overrides) -> EconomySystem:
    settings = {
        "database_url": "memory://",
        "jwt_secret": SECRET,
        "auth_enabled": True,
        "rate_limits": {"transfer": "10/60"},
    }
    settings.update(overrides)
    system = EconomySystem(EconomyConfig(**settings), storage=InMemoryStorage())
    system.ledger.create_account_if_missing("alice", {Currency.EURO: Amount.parse("100")})
    system.ledger.create_account_if_missing("bob")
    return system


def token(sub: str, role: str = "user", expires_in: int = 3600) -> str:
    payload = {"sub": sub, "role": role, "exp": int(time.time()) + expires_in}
    return jwt.encode(payload, SECRET, algorithm="HS256")


def auth(sub: str, role: str = "user") -> dict:
    return {"Authorization": f"Bearer {token(sub, role)}"}


@pytest.fixture
def system():
    system = make_system()
    yield system
    system.close()


@pytest.fixture
def client(system):
    return TestClient(create_app(system))


class TestHealthEndpoints:
    """Test basic health endpoint"""

    def test_health(self, client):
        r = client.get("/health")
        assert r.status_code == 200
        assert r.json()["status"] == "healthy"


class TestTransferFlow:
    """Transfers through the HTTP surface"""

    def test_transfer_success(self, client):
        r = client.post("/transfer", headers=auth("alice"), json={
            "receiverId": "bob", "amount": "10", "currency": "EURO", "description": "gift"
        })
        assert r.status_code == 200
        body = r.json()
        assert body["success"] is True
        assert body["data"]["amounts"] == {
            "gross": "10.0000", "tax": "0.5000", "net": "9.5000",
            "tax_rate": "0.05", "currency": "EURO",
        }
        assert body["data"]["transaction_id"]

        r = client.get("/balances", headers=auth("bob"))
        assert r.json() == {
            "success": True,
            "balances": {"EURO": "9.5000", "GOLD": "0.0000", "RON": "0.0000"},
        }

    def test_insufficient_funds(self, client):
        r = client.post("/transfer", headers=auth("bob"), json={
            "receiverId": "alice", "amount": "10", "currency": "EURO"
        })
        assert r.status_code == 409
        assert r.json()["success"] is False
        assert r.json()["code"] == "INSUFFICIENT_FUNDS"

    @pytest.mark.parametrize("amount", ["-1", "abc", "1.00001", 10])
    def test_invalid_amount(self, client, amount):
        r = client.post("/transfer", headers=auth("alice"), json={
            "receiverId": "bob", "amount": amount, "currency": "EURO"
        })
        assert r.status_code == 400
        assert r.json()["code"] == "INVALID_AMOUNT"

    def test_overlong_amount(self, client):
        r = client.post("/transfer", headers=auth("alice"), json={
            "receiverId": "bob", "amount": "9" * 5000, "currency": "EURO"
        })
        assert r.status_code == 400
        assert r.json()["code"] == "INVALID_AMOUNT"

    def test_invalid_currency(self, client):
        r = client.post("/transfer", headers=auth("alice"), json={
            "receiverId": "bob", "amount": "1", "currency": "USD"
        })
        assert r.status_code == 400
        assert r.json()["code"] == "INVALID_CURRENCY"

    def test_same_account_and_unknown_receiver(self, client):
        r = client.post("/transfer", headers=auth("alice"), json={
            "receiverId": "alice", "amount": "1", "currency": "EURO"
        })
        assert r.json()["code"] == "SAME_ACCOUNT"

        r = client.post("/transfer", headers=auth("alice"), json={
            "receiverId": "ghost", "amount": "1", "currency": "EURO"
        })
        assert r.status_code == 404
        assert r.json()["code"] == "UNKNOWN_ACCOUNT"

    def test_missing_fields(self, client):
        r = client.post("/transfer", headers=auth("alice"), json={"amount": "1"})
        assert r.status_code == 400
        assert r.json()["code"] == "VALIDATION_ERROR"

    def test_rate_limit(self, client):
        for _ in range(10):
            r = client.post("/transfer", headers=auth("alice"), json={
                "receiverId": "bob", "amount": "1", "currency": "EURO"
            })
            assert r.status_code == 200
        r = client.post("/transfer", headers=auth("alice"), json={
            "receiverId": "bob", "amount": "1", "currency": "EURO"
        })
        assert r.status_code == 429
        assert r.json()["code"] == "RATE_LIMIT_EXCEEDED"
        assert r.json()["retry_after_seconds"] >= 1
        assert "Retry-After" in r.headers


class TestBalanceAndHistory:
    """Read endpoints"""

    def test_single_balance(self, client):
        r = client.get("/balance/euro", headers=auth("alice"))
        assert r.json() == {"success": True, "currency": "EURO", "balance": "100.0000"}

        r = client.get("/balance/DOGE", headers=auth("alice"))
        assert r.status_code == 400
        assert r.json()["code"] == "INVALID_CURRENCY"

    def test_history(self, client):
        for amount in ["1", "2", "3"]:
            client.post("/transfer", headers=auth("alice"), json={
                "receiverId": "bob", "amount": amount, "currency": "EURO"
            })

        r = client.get("/history?page=1&limit=2", headers=auth("alice"))
        data = r.json()["data"]
        assert [t["gross_amount"] for t in data["transactions"]] == ["3.0000", "2.0000"]
        assert data["transactions"][0]["direction"] == "sent"
        assert data["page_size"] == 2
        assert data["has_more"] is True

        r = client.get("/history", headers=auth("bob"))
        assert r.json()["data"]["transactions"][0]["direction"] == "received"

    def test_huge_page_number(self, client):
        r = client.get(f"/history?page={10 ** 19}", headers=auth("alice"))
        assert r.status_code == 200
        assert r.json()["data"]["transactions"] == []

    def test_unknown_caller_account(self, client):
        r = client.get("/balances", headers=auth("nobody"))
        assert r.status_code == 404
        assert r.json()["code"] == "UNKNOWN_ACCOUNT"


class TestAuthentication:
    """JWT verification and trusted headers"""

    def test_missing_token(self, client):
        r = client.get("/balances")
        assert r.status_code == 401
        assert r.json()["code"] == "UNAUTHORIZED"

    def test_bad_and_expired_tokens(self, client):
        r = client.get("/balances", headers={"Authorization": "Bearer not-a-jwt"})
        assert r.status_code == 401

        expired = token("alice", expires_in=-10)
        r = client.get("/balances", headers={"Authorization": f"Bearer {expired}"})
        assert r.status_code == 401
        assert r.json()["error"] == "Token expired"

    def test_trusted_headers_when_auth_disabled(self):
        system = make_system(auth_enabled=False)
        client = TestClient(create_app(system))

        r = client.get("/balances", headers={"X-Account-Id": "alice"})
        assert r.json()["balances"]["EURO"] == "100.0000"

        r = client.get("/balances")
        assert r.status_code == 401
        system.close()


class TestAdminEndpoints:
    """Admin-only endpoints"""

    def test_treasury_requires_admin(self, client):
        r = client.get("/admin/treasury", headers=auth("alice"))
        assert r.status_code == 403
        assert r.json()["code"] == "FORBIDDEN"

    def test_treasury_report(self, client):
        client.post("/transfer", headers=auth("alice"), json={
            "receiverId": "bob", "amount": "10", "currency": "EURO"
        })
        r = client.get("/admin/treasury", headers=auth("root", role="admin"))
        assert r.status_code == 200
        assert r.json()["data"]["funds"]["EURO"] == "0.5000"

    def test_freeze_and_unfreeze(self, client):
        admin = auth("root", role="admin")
        r = client.post("/admin/accounts/alice/freeze", headers=admin, json={"reason": "fraud review"})
        assert r.json()["data"]["is_frozen"] is True

        r = client.post("/transfer", headers=auth("alice"), json={
            "receiverId": "bob", "amount": "1", "currency": "EURO"
        })
        assert r.status_code == 403
        assert r.json()["code"] == "ACCOUNT_FROZEN"

        r = client.post("/admin/accounts/alice/unfreeze", headers=admin)
        assert r.json()["data"]["is_frozen"] is False

        r = client.post("/admin/accounts/ghost/freeze", headers=admin)
        assert r.status_code == 404

    def test_integrity(self, client):
        client.post("/transfer", headers=auth("alice"), json={
            "receiverId": "bob", "amount": "10", "currency": "EURO"
        })
        r = client.get("/admin/integrity", headers=auth("root", role="admin"))
        data = r.json()["data"]
        assert data["valid"] is True
        assert data["chain"]["total_records"] == 1
        assert data["economic_stats"]["total_supply"]["EURO"] == "100.0000"
        assert data["economic_stats"]["transactions"]["EURO"]["tax"] == "0.5000"
        assert data["treasury"]["funds"]["EURO"] == "0.5000"

    def test_rate_limit_reset(self, client):
        for _ in range(10):
            client.post("/transfer", headers=auth("alice"), json={
                "receiverId": "bob", "amount": "1", "currency": "EURO"
            })
        admin = auth("root", role="admin")
        r = client.post("/admin/accounts/alice/rate-limit/reset", headers=admin)
        assert r.json()["success"] is True

        r = client.post("/transfer", headers=auth("alice"), json={
            "receiverId": "bob", "amount": "1", "currency": "EURO"
        })
        assert r.status_code == 200

        r = client.post("/admin/accounts/ghost/rate-limit/reset", headers=admin)
        assert r.status_code == 404


def test_unexpected_errors_are_hidden(system):
    def explode(*args, **kwargs):
        raise RuntimeError("secret internals")

    system.query_service.get_all_balances = explode
    client = TestClient(create_app(system), raise_server_exceptions=False)

    r = client.get("/balances", headers=auth("alice"))
    assert r.status_code == 500
    assert r.json() == {"success": False, "error": "Internal server error", "code": "INTERNAL_ERROR"}
