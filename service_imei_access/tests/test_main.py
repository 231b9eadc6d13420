"""
Unit tests for the IMEI Access API.
"""

import pytest
from unittest.mock import AsyncMock
from fastapi.testclient import TestClient

from shared.config import get_config
from shared.errors import StoreError
from service_imei_access.app.main import ImeiAccessApi, create_app
from service_imei_access.app.restrictions.models import (
    AccessType, DeviceData, DeviceTarget, Restriction, Technician
)
from service_imei_access.app.stores.memory import InMemoryStore
from service_imei_access.app.stores.postgres import PostgresStore

ALLOWED_IMEI = "356938035643809"
DENIED_IMEI = "356938035643817"

TECHNICIAN_HEADERS = {"X-Caller-Role": "technician", "X-Caller-Id": "1"}
RESELLER_ADMIN_HEADERS = {"X-Caller-Role": "admin", "X-Caller-Id": "55", "X-Reseller-Id": "500"}
SUPER_ADMIN_HEADERS = {"X-Caller-Role": "admin", "X-Caller-Id": "1"}


@pytest.fixture
def store():
    """Technician 1 of reseller 500 may see device 10 only."""
    store = InMemoryStore()
    store.add_device(ALLOWED_IMEI, 10, DeviceData(device_id=10, imei=ALLOWED_IMEI, device_model="FMB920"))
    store.add_device(DENIED_IMEI, 11, DeviceData(device_id=11, imei=DENIED_IMEI))
    store.add_technician(Technician(technician_id=1, user_id=101, reseller_id=500))
    store.add_restriction(Restriction(
        restriction_id=1,
        technician_id=1,
        target=DeviceTarget(10),
        access_type=AccessType.ALLOW,
        is_permanent=True
    ))
    return store


@pytest.fixture
def client(store):
    """Create test client."""
    return TestClient(create_app(store=store))


class TestImeiAccessApi:
    """Test cases for the IMEI Access API."""

    def test_root_endpoint(self, client):
        """Test root endpoint."""
        response = client.get("/")
        assert response.status_code == 200

        data = response.json()
        assert data["service"] == "imei_access"
        assert data["message"] == "Fleet Console - IMEI Access Service"
        assert "restriction_engine" in data["capabilities"]

    def test_health_endpoint(self, client):
        """Test health endpoint."""
        response = client.get("/health")
        assert response.status_code == 200

        data = response.json()
        assert data["service"] == "imei_access"
        assert data["status"] == "ok"
        assert data["dependencies"] == {"store": "ok"}

    def test_health_reports_store_error(self, store):
        """Test health marks a failing store."""
        store.health_check = AsyncMock(side_effect=StoreError("postgres", "health_check"))
        client = TestClient(create_app(store=store))

        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["dependencies"] == {"store": "error"}

    def test_check_access_allowed(self, client):
        """Test an allowed device returns 200."""
        response = client.get(f"/imei/{ALLOWED_IMEI}/check-access", headers=TECHNICIAN_HEADERS)

        assert response.status_code == 200
        assert response.json() == {"has_access": True, "device_id": 10}
        assert "X-Request-Id" in response.headers

    def test_check_access_denied(self, client):
        """Test a denied device returns 403 with the display message."""
        response = client.get(f"/imei/{DENIED_IMEI}/check-access", headers=TECHNICIAN_HEADERS)

        assert response.status_code == 403
        data = response.json()
        assert data["message"].startswith("Restricted Access")
        assert data["reason"]

    def test_check_access_unknown_imei(self, client):
        """Test an unknown IMEI returns 404."""
        response = client.get("/imei/000000000000000/check-access", headers=TECHNICIAN_HEADERS)

        assert response.status_code == 404
        data = response.json()
        assert data["code"] == "DEVICE_NOT_FOUND"
        assert data["details"]["imei"] == "000000000000000"

    def test_reseller_admin_uses_cumulative_rules(self, client):
        """Test the reseller admin sees only what some technician may see."""
        allowed = client.get(f"/imei/{ALLOWED_IMEI}/check-access", headers=RESELLER_ADMIN_HEADERS)
        denied = client.get(f"/imei/{DENIED_IMEI}/check-access", headers=RESELLER_ADMIN_HEADERS)

        assert allowed.status_code == 200
        assert denied.status_code == 403
        assert "technicians' allowed list" in denied.json()["message"]

    def test_super_admin_sees_everything(self, client):
        response = client.get(f"/imei/{DENIED_IMEI}/check-access", headers=SUPER_ADMIN_HEADERS)

        assert response.status_code == 200

    @pytest.mark.parametrize("headers", [
        {},
        {"X-Caller-Role": "technician"},
        {"X-Caller-Role": "technician", "X-Caller-Id": "abc"},
        {"X-Caller-Role": "driver", "X-Caller-Id": "1"},
        {"X-Caller-Role": "admin", "X-Caller-Id": "1", "X-Reseller-Id": "x"},
    ])
    def test_invalid_caller_headers(self, client, headers):
        """Test missing or malformed identity headers return 400."""
        response = client.get(f"/imei/{ALLOWED_IMEI}/check-access", headers=headers)

        assert response.status_code == 400
        assert response.json()["code"] == "VALIDATION_ERROR"

    def test_store_failure_returns_503(self, store):
        """Test store failures surface as 503 without store details."""
        store.get_restrictions = AsyncMock(side_effect=StoreError("rules", "get_restrictions"))
        client = TestClient(create_app(store=store))

        response = client.get(f"/imei/{ALLOWED_IMEI}/check-access", headers=TECHNICIAN_HEADERS)

        assert response.status_code == 503
        data = response.json()
        assert data["code"] == "STORE_ERROR"
        assert data["details"] == {}

    def test_device_data(self, client):
        """Test device data is returned for an allowed device."""
        response = client.get(f"/imei/{ALLOWED_IMEI}/device", headers=TECHNICIAN_HEADERS)

        assert response.status_code == 200
        data = response.json()
        assert data["device_id"] == 10
        assert data["device_model"] == "FMB920"

    def test_device_data_denied(self, client):
        response = client.get(f"/imei/{DENIED_IMEI}/device", headers=TECHNICIAN_HEADERS)

        assert response.status_code == 403

    def test_submit_verification(self, client, store):
        """Test verification submission merges repeats inside the window."""
        body = {
            "imei": ALLOWED_IMEI,
            "notes": "Installed",
            "gps_data": {"latitude": 25.2, "longitude": 55.3, "gps_time": "2026-03-10T11:59:00Z"}
        }

        first = client.post("/imei/verification", json=body, headers=TECHNICIAN_HEADERS)
        second = client.post("/imei/verification", json={**body, "notes": "Rechecked"},
                             headers=TECHNICIAN_HEADERS)

        assert first.status_code == 200
        assert first.json()["success"] is True
        assert second.json()["verification_id"] == first.json()["verification_id"]
        assert len(store.logs) == 1
        assert store.logs[first.json()["verification_id"]].notes == "Rechecked"

    def test_submit_verification_denied(self, client, store):
        response = client.post("/imei/verification", json={"imei": DENIED_IMEI}, headers=TECHNICIAN_HEADERS)

        assert response.status_code == 403
        assert store.logs == {}

    def test_submit_verification_invalid_body(self, client):
        response = client.post("/imei/verification", json={"imei": ""}, headers=TECHNICIAN_HEADERS)

        assert response.status_code == 422

    def test_metrics_endpoint(self, client):
        """Test metrics endpoint exposes access decisions."""
        client.get(f"/imei/{ALLOWED_IMEI}/check-access", headers=TECHNICIAN_HEADERS)

        response = client.get("/metrics")

        assert response.status_code == 200
        assert "access_decisions_total" in response.text
        assert "http_requests_total" in response.text

    def test_verification_history(self, client):
        """Test a technician sees their own verifications of today."""
        client.post("/imei/verification", json={"imei": ALLOWED_IMEI, "notes": "ok"}, headers=TECHNICIAN_HEADERS)

        response = client.get("/imei/history", headers=TECHNICIAN_HEADERS)

        assert response.status_code == 200
        data = response.json()
        assert data["total_count"] == 1
        assert data["items"][0]["imei"] == ALLOWED_IMEI
        assert data["items"][0]["notes"] == "ok"

    def test_verification_history_paging_params(self, client):
        response = client.get("/imei/history", params={"page": 0}, headers=TECHNICIAN_HEADERS)

        assert response.status_code == 400

    def test_verification_history_requires_technician(self, client):
        response = client.get("/imei/history", headers=RESELLER_ADMIN_HEADERS)

        assert response.status_code == 400


class TestStoreSelection:
    """Test cases for store backend selection."""

    def test_memory_backend_by_default(self):
        service = ImeiAccessApi(get_config("imei_access", 8013, store_backend="memory"))

        assert isinstance(service.store, InMemoryStore)

    def test_postgres_backend(self):
        config = get_config("imei_access", 8013, store_backend="postgres",
                            postgres_dsn="postgres://db:5432/imei", verification_gap_hours=2)

        service = ImeiAccessApi(config)

        assert isinstance(service.store, PostgresStore)
        assert service.store.dsn == "postgres://db:5432/imei"
        assert service.store.pool is None
        assert service.access.deduplicator.gap.total_seconds() == 2 * 3600
