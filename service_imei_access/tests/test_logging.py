"""
Unit tests for request and caller log context.
"""

import pytest
import structlog

from shared.errors import ValidationError
from shared.logging import bind_caller, bind_request, clear_context
from service_imei_access.app.main import get_caller


@pytest.fixture(autouse=True)
def empty_context():
    clear_context()
    yield
    clear_context()


class TestLogContext:
    """Test cases for the bound log context."""

    def test_bind_request_uses_given_id(self):
        assert bind_request("req-1") == "req-1"
        assert structlog.contextvars.get_contextvars() == {"request_id": "req-1"}

    def test_bind_request_generates_id(self):
        request_id = bind_request()

        assert request_id
        assert structlog.contextvars.get_contextvars()["request_id"] == request_id

    def test_bind_request_starts_fresh_context(self):
        bind_request("req-1")
        bind_caller("technician", 1)

        bind_request("req-2")

        assert structlog.contextvars.get_contextvars() == {"request_id": "req-2"}

    def test_bind_caller_with_reseller(self):
        bind_caller("reseller_admin", 55, 500)

        assert structlog.contextvars.get_contextvars() == {
            "caller_kind": "reseller_admin", "caller_id": 55, "reseller_id": 500
        }

    def test_clear_context(self):
        bind_request("req-1")
        bind_caller("super_admin", 1)

        clear_context()

        assert structlog.contextvars.get_contextvars() == {}


class TestCallerBinding:
    """Test cases for the caller identity bound while resolving headers."""

    @pytest.mark.asyncio
    async def test_technician(self):
        caller = await get_caller("technician", "7", None)

        assert caller.technician_id == 7
        assert structlog.contextvars.get_contextvars() == {"caller_kind": "technician", "caller_id": 7}

    @pytest.mark.asyncio
    async def test_technician_ignores_reseller_header(self):
        await get_caller("technician", "7", "500")

        assert "reseller_id" not in structlog.contextvars.get_contextvars()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("reseller_header,kind,reseller_id", [
        ("500", "reseller_admin", 500),
        (None, "super_admin", None),
    ])
    async def test_admin(self, reseller_header, kind, reseller_id):
        caller = await get_caller("Admin", "55", reseller_header)

        context = structlog.contextvars.get_contextvars()
        assert caller.kind == kind
        assert context["caller_kind"] == kind
        assert context["caller_id"] == 55
        assert context.get("reseller_id") == reseller_id

    @pytest.mark.asyncio
    async def test_invalid_headers_bind_nothing(self):
        with pytest.raises(ValidationError):
            await get_caller("driver", "1", None)

        assert structlog.contextvars.get_contextvars() == {}
