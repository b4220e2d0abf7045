import pytest
import asyncio
import httpx
from fastapi.testclient import TestClient
from unittest.mock import patch

from main import app, limiter
import config
from config import get_settings
from locks import get_lock_registry, reset_lock_registry
from repositories import (
    InMemoryPointHistoryRepository,
    InMemoryUserPointRepository,
    StoreError,
    get_point_history_repository,
    get_user_point_repository,
    reset_repositories,
)

client = TestClient(app)


@pytest.fixture(autouse=True)
def reset_state():
    """Reset stores, locks and rate limits before each test."""
    reset_repositories()
    reset_lock_registry()
    limiter.reset()
    yield
    app.dependency_overrides.clear()


def charge(user_id, amount):
    return client.patch(f"/point/{user_id}/charge", json={"amount": amount})


def use(user_id, amount):
    return client.patch(f"/point/{user_id}/use", json={"amount": amount})


class TestPointEndpoints:
    """Test basic point endpoints."""

    def test_get_point_of_new_user(self):
        """Test balance of a user never seen before."""
        response = client.get("/point/1")

        assert response.status_code == 200
        data = response.json()
        assert data["id"] == 1
        assert data["point"] == 0
        assert "updated_at" in data

    def test_charge_success(self):
        """Test successful charge."""
        response = charge(1, 10000)

        assert response.status_code == 200
        assert response.json()["point"] == 10000
        assert client.get("/point/1").json()["point"] == 10000

    def test_use_success(self):
        """Test successful use."""
        charge(1, 10000)

        response = use(1, 4000)

        assert response.status_code == 200
        assert response.json()["point"] == 6000

    def test_histories_in_order(self):
        """Test that histories come back in operation order."""
        charge(1, 10000)
        use(1, 3000)
        charge(1, 5000)

        response = client.get("/point/1/histories")

        assert response.status_code == 200
        records = response.json()
        assert [(r["type"], r["amount"]) for r in records] == [
            ("CHARGE", 10000),
            ("USE", 3000),
            ("CHARGE", 5000),
        ]
        assert all(r["user_id"] == 1 for r in records)

    def test_histories_of_new_user(self):
        """Test histories of a user never seen before."""
        response = client.get("/point/5/histories")

        assert response.status_code == 200
        assert response.json() == []


class TestErrorMapping:
    """Test business errors mapped to HTTP responses."""

    @pytest.mark.parametrize("amount", [0, -5, 999, 100001])
    def test_invalid_charge_amount(self, amount):
        """Test charge amount outside the band."""
        response = charge(1, amount)

        assert response.status_code == 400
        assert response.json()["error_code"] == "INVALID_AMOUNT"
        assert client.get("/point/1").json()["point"] == 0

    def test_balance_ceiling(self):
        """Test charge over the balance ceiling."""
        for _ in range(10):
            assert charge(1, 100000).status_code == 200

        response = charge(1, 1000)

        assert response.status_code == 409
        assert response.json()["error_code"] == "BALANCE_CEILING_EXCEEDED"
        assert client.get("/point/1").json()["point"] == 1000000

    def test_insufficient_balance(self):
        """Test use larger than the balance."""
        response = use(1, 1000)

        assert response.status_code == 409
        body = response.json()
        assert body["error_code"] == "INSUFFICIENT_BALANCE"
        assert body["detail"] == "Insufficient balance"

    def test_store_failure(self):
        """Test history store failure after the balance write."""
        class FailingHistoryRepository(InMemoryPointHistoryRepository):
            async def append(self, user_id, type, amount, timestamp=None):
                raise StoreError("history table unavailable")

        failing = FailingHistoryRepository()
        app.dependency_overrides[get_point_history_repository] = lambda: failing

        response = charge(1, 5000)

        assert response.status_code == 500
        assert response.json()["error_code"] == "STORE_FAILURE"
        assert client.get("/point/1").json()["point"] == 5000

    @pytest.mark.asyncio
    async def test_lock_timeout(self):
        """Test busy user mapped to 503 with Retry-After."""
        app.dependency_overrides[get_settings] = lambda: config.TestingSettings(lock_timeout_seconds=0.05)
        handle = await get_lock_registry().acquire(1, 1)

        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
            response = await ac.patch("/point/1/charge", json={"amount": 1000})

        get_lock_registry().release(handle)
        assert response.status_code == 503
        assert response.headers["retry-after"] == "1"
        assert response.json()["error_code"] == "LOCK_TIMEOUT"
        assert (await get_user_point_repository().read(1)).point == 0

    @pytest.mark.asyncio
    async def test_small_charge_while_user_busy(self):
        """Test sub-minimum charge gets 400, not 503, while the user is busy."""
        app.dependency_overrides[get_settings] = lambda: config.TestingSettings(lock_timeout_seconds=0.05)
        handle = await get_lock_registry().acquire(1, 1)

        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
            response = await ac.patch("/point/1/charge", json={"amount": 999})
            other = await ac.patch("/point/2/charge", json={"amount": 999})

        get_lock_registry().release(handle)
        assert response.status_code == 400
        assert response.json()["error_code"] == "INVALID_AMOUNT"
        assert other.status_code == 400
        assert len(get_lock_registry()) == 1

    def test_balance_read_failure(self):
        """Test balance store failure on a balance query."""
        class FailingReadRepository(InMemoryUserPointRepository):
            async def read(self, user_id):
                raise StoreError("balance table unavailable")

        failing = FailingReadRepository()
        app.dependency_overrides[get_user_point_repository] = lambda: failing

        response = client.get("/point/1")

        assert response.status_code == 500
        assert response.json()["error_code"] == "STORE_FAILURE"

    def test_history_read_failure(self):
        """Test history store failure on a histories query."""
        class FailingHistoryRepository(InMemoryPointHistoryRepository):
            async def list_by_user(self, user_id):
                raise StoreError("history table unavailable")

        failing = FailingHistoryRepository()
        app.dependency_overrides[get_point_history_repository] = lambda: failing

        response = client.get("/point/1/histories")

        assert response.status_code == 500
        assert response.json()["error_code"] == "STORE_FAILURE"

    @patch("services.logger")
    def test_logging_on_rejection(self, mock_logger):
        """Test that rejections are logged."""
        response = use(1, 1000)

        assert response.status_code == 409
        mock_logger.warning.assert_called()


class TestValidation:
    """Test transport-level validation."""

    def test_non_integer_amount(self):
        """Test fractional amount rejected."""
        response = client.patch("/point/1/charge", json={"amount": 1500.5})

        assert response.status_code == 422

    def test_missing_amount(self):
        """Test missing amount rejected."""
        response = client.patch("/point/1/charge", json={})

        assert response.status_code == 422

    def test_non_integer_user_id(self):
        """Test non-numeric user id rejected."""
        response = client.get("/point/abc")

        assert response.status_code == 422


class TestConcurrency:
    """Test concurrent requests through the API."""

    @pytest.mark.asyncio
    async def test_concurrent_charges_same_user(self):
        """Test concurrent charge requests for one user."""
        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
            tasks = [ac.patch("/point/1/charge", json={"amount": 1000}) for _ in range(20)]
            results = await asyncio.gather(*tasks)

            assert all(r.status_code == 200 for r in results)
            final = await ac.get("/point/1")
            histories = await ac.get("/point/1/histories")

        assert final.json()["point"] == 20000
        assert len(histories.json()) == 20

    @pytest.mark.asyncio
    async def test_concurrent_use_exact_balance(self):
        """Test two uses racing for the whole balance."""
        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
            await ac.patch("/point/1/charge", json={"amount": 5000})
            results = await asyncio.gather(
                ac.patch("/point/1/use", json={"amount": 5000}),
                ac.patch("/point/1/use", json={"amount": 5000}),
            )

        assert sorted(r.status_code for r in results) == [200, 409]


class TestHealthAndUtility:
    """Test health check and utility endpoints."""

    def test_health_check(self):
        """Test health check endpoint."""
        charge(1, 1000)
        charge(2, 2000)
        use(2, 1000)

        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["users_count"] == 2
        assert data["histories_count"] == 3
        assert data["active_locks"] == 2

    def test_root_endpoint(self):
        """Test root endpoint."""
        response = client.get("/")

        assert response.status_code == 200
        data = response.json()
        assert "message" in data
        assert "docs" in data
