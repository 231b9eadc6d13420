"""
IMEI Access service for the fleet console.
"""

from datetime import datetime
from typing import Optional

from fastapi import Depends, Header
from fastapi.responses import JSONResponse

from shared.base_service import BaseService
from shared.config import ServiceConfig, get_config
from shared.errors import ValidationError
from shared.logging import bind_caller

from .restrictions.models import AdminCaller, Caller, TechnicianCaller
from .service import ImeiAccessService
from .stores.memory import InMemoryStore
from .stores.postgres import PostgresStore
from .verification.models import VerificationRequest


def _parse_id(value: Optional[str], header: str) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except ValueError:
        raise ValidationError(f"{header} must be an integer", {"header": header})


async def get_caller(
    x_caller_role: Optional[str] = Header(None),
    x_caller_id: Optional[str] = Header(None),
    x_reseller_id: Optional[str] = Header(None),
) -> Caller:
    """Build the caller from the identity headers set by the gateway."""
    caller_id = _parse_id(x_caller_id, "X-Caller-Id")
    if caller_id is None:
        raise ValidationError("X-Caller-Id header is required")

    role = (x_caller_role or "").lower()
    reseller_id = None
    if role == "technician":
        caller: Caller = TechnicianCaller(technician_id=caller_id)
    elif role == "admin":
        reseller_id = _parse_id(x_reseller_id, "X-Reseller-Id")
        caller = AdminCaller(user_id=caller_id, reseller_id=reseller_id)
    else:
        raise ValidationError("X-Caller-Role must be 'technician' or 'admin'", {"role": x_caller_role})

    bind_caller(caller.kind, caller_id, reseller_id)
    return caller


class ImeiAccessApi(BaseService):
    """IMEI Access service implementation."""

    def __init__(self, config: Optional[ServiceConfig] = None, store=None):
        super().__init__("imei_access", 8013, config or get_config("imei_access", 8013))

        if store is None:
            if self.config.store_backend == "postgres":
                store = PostgresStore(
                    self.config.postgres_dsn,
                    min_size=self.config.postgres_min_pool_size,
                    max_size=self.config.postgres_max_pool_size,
                    command_timeout=self.config.postgres_command_timeout
                )
            else:
                store = InMemoryStore()
        self.store = store

        self.access = ImeiAccessService(
            rules=store,
            tenants=store,
            devices=store,
            logs=store,
            metrics=self.metrics,
            gap_hours=self.config.verification_gap_hours
        )

        self._setup_imei_routes()

    def _setup_imei_routes(self):
        """Set up IMEI access routes."""

        @self.app.get("/")
        async def root():
            """Root endpoint."""
            return {
                "service": "imei_access",
                "message": "Fleet Console - IMEI Access Service",
                "version": "1.0.0",
                "capabilities": ["restriction_engine", "cumulative_access", "verification", "verification_history"]
            }

        @self.app.get("/imei/{imei}/check-access")
        async def check_access(imei: str, caller: Caller = Depends(get_caller)):
            """Check whether the caller may access an IMEI."""
            result = await self.access.check_caller_access(caller, imei)

            if not result.has_access:
                self.logger.warning(
                    "Access denied",
                    caller_kind=caller.kind,
                    imei=imei,
                    message=result.message
                )
                return JSONResponse(
                    status_code=403,
                    content={"message": result.message, "reason": result.reason}
                )

            return {"has_access": True, "device_id": result.device_id}

        @self.app.get("/imei/{imei}/device")
        async def get_device_data(imei: str, caller: Caller = Depends(get_caller)):
            """Get device data for verification."""
            result = await self.access.get_device_data(caller, imei)

            if not result.success:
                return JSONResponse(
                    status_code=403,
                    content={"message": result.message, "reason": result.reason}
                )

            self.logger.info("Device data accessed", caller_kind=caller.kind, imei=imei)
            return result.data

        @self.app.post("/imei/verification")
        async def submit_verification(request: VerificationRequest, caller: Caller = Depends(get_caller)):
            """Submit a verification for a device."""
            result = await self.access.verify_device(caller, request)

            if not result.success:
                return JSONResponse(status_code=403, content={"message": result.message})

            self.logger.info(
                "Device verified",
                caller_kind=caller.kind,
                imei=request.imei,
                verification_id=result.verification_id
            )
            return {"success": True, "verification_id": result.verification_id}

        @self.app.get("/imei/history")
        async def verification_history(
            from_date: Optional[datetime] = None,
            to_date: Optional[datetime] = None,
            page: int = 1,
            page_size: int = 50,
            caller: Caller = Depends(get_caller)
        ):
            """Get the calling technician's verification history."""
            if not isinstance(caller, TechnicianCaller):
                raise ValidationError("Verification history is only available to technicians")

            return await self.access.get_verification_history(
                caller.technician_id, from_date, to_date, page, page_size
            )

    async def _check_dependencies(self):
        """Check IMEI access service dependencies."""
        dependencies = {}

        try:
            healthy = await self.store.health_check()
        except Exception:
            healthy = False
        dependencies["store"] = "ok" if healthy else "error"

        return dependencies

    async def start(self):
        """Start service components."""
        if isinstance(self.store, PostgresStore):
            await self.store.start()
        self.logger.info("IMEI access service started", store_backend=type(self.store).__name__)

    async def stop(self):
        """Stop service components."""
        if isinstance(self.store, PostgresStore):
            await self.store.stop()
        self.logger.info("IMEI access service stopped")


def create_app(config: Optional[ServiceConfig] = None, store=None):
    """Create IMEI access service application."""
    service = ImeiAccessApi(config, store)
    return service.app


if __name__ == "__main__":
    service = ImeiAccessApi()
    service.run()
