"""
IMEI access orchestration: stores in, verdicts out.
"""

from contextlib import nullcontext
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, FrozenSet, Iterable, List, Optional

from pydantic import BaseModel

from shared.errors import DeviceNotFoundError, ValidationError
from shared.logging import get_logger
from shared.metrics import MetricsCollector
from shared.tracing import trace_operation
from .audit import AuditActions, AuditSink, StructlogAuditSink
from .restrictions.cumulative import CumulativeResolver
from .restrictions.engine import RestrictionEngine, filter_active
from .restrictions.models import (
    AccessResult, AdminCaller, Caller, DeviceData, Restriction,
    TechnicianCaller, utcnow
)
from .stores.base import DeviceDirectory, RuleStore, TenantDirectory, VerificationLogStore
from .verification.deduplicator import VerificationDeduplicator
from .verification.models import (
    ADMIN_TECHNICIAN_ID, VerificationHistoryItem, VerificationHistoryPage, VerificationPayload,
    VerificationRequest, VerificationResult
)

TECHNICIAN_DENIED_MESSAGE = "Restricted Access - You are not authorized to view data for this IMEI."
TECHNICIAN_DENIED_REASON = "IMEI is restricted for this technician"
ADMIN_DENIED_MESSAGE = "Restricted Access - This IMEI is not in your technicians' allowed list."
ADMIN_DENIED_REASON = "IMEI not found in any technician's allowed restrictions"

MAX_HISTORY_PAGE_SIZE = 200


def _start_of_day(moment: datetime) -> datetime:
    return moment.astimezone(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)


def _as_utc(moment: datetime) -> datetime:
    # query strings without an offset are read as UTC
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment


class DeviceDataResult(BaseModel):
    """Outcome of a device data request."""
    success: bool
    data: Optional[DeviceData] = None
    message: Optional[str] = None
    reason: Optional[str] = None


class ImeiAccessService:
    """Decides whether a caller may view or verify a device.

    Every check reads fresh rule snapshots from the stores; nothing is
    cached between calls. Store errors propagate unchanged.
    """

    def __init__(self, rules: RuleStore, tenants: TenantDirectory, devices: DeviceDirectory,
                 logs: VerificationLogStore, audit: Optional[AuditSink] = None,
                 metrics: Optional[MetricsCollector] = None, gap_hours: int = 4,
                 clock: Callable[[], datetime] = utcnow):
        self.rules = rules
        self.tenants = tenants
        self.devices = devices
        self.logs = logs
        self.metrics = metrics
        self.audit = audit or StructlogAuditSink(metrics)
        self.clock = clock
        self.engine = RestrictionEngine()
        self.cumulative = CumulativeResolver()
        self.deduplicator = VerificationDeduplicator(logs, gap_hours, metrics)
        self.logger = get_logger("imei_access.access")

    async def check_access(self, technician_id: int, imei: str) -> AccessResult:
        """Check a technician's access to a device by IMEI.

        Raises DeviceNotFoundError when the IMEI does not resolve.
        """
        with trace_operation("imei.check_access", technician_id=technician_id):
            with self._timed("technician"):
                result = await self._check_technician(technician_id, imei)
        self._count("technician", result)
        return result

    async def _check_technician(self, technician_id: int, imei: str) -> AccessResult:
        technician = await self.tenants.get_technician(technician_id)
        if technician is None:
            return AccessResult(has_access=False, message="Technician not found")
        if not technician.is_active:
            return AccessResult(has_access=False, message="Technician account is not active")

        device_id = await self._resolve_device(imei)
        now = self.clock()

        if technician.daily_limit > 0:
            start_of_day = _start_of_day(now)
            verified_today = await self.logs.count_since(technician_id, start_of_day)
            if verified_today >= technician.daily_limit:
                self.logger.info(
                    "Daily verification limit reached",
                    technician_id=technician_id,
                    daily_limit=technician.daily_limit
                )
                return AccessResult(has_access=False, message="Daily verification limit reached")

        active = filter_active(await self.rules.get_restrictions(technician_id), now)
        tag_members = await self._load_tag_members(active)
        decision = self.engine.resolve(active, device_id, tag_members)

        self.logger.info(
            "Technician access resolved",
            technician_id=technician_id,
            device_id=device_id,
            mode=decision.mode.value if decision.mode else None,
            allowed=decision.allowed,
            matched_restriction_id=decision.matched_restriction_id
        )

        if not decision.allowed:
            await self.audit.log(technician.user_id, AuditActions.IMEI_ACCESS_DENIED, "Device", imei)
            return AccessResult(
                has_access=False,
                message=TECHNICIAN_DENIED_MESSAGE,
                reason=decision.reason or TECHNICIAN_DENIED_REASON
            )

        return AccessResult(has_access=True, device_id=device_id)

    async def check_admin_access(self, user_id: int, reseller_id: Optional[int], imei: str) -> AccessResult:
        """Check an administrator's access to a device by IMEI.

        Without a reseller the caller is a super-admin and every resolvable
        device is permitted. Raises DeviceNotFoundError when the IMEI does
        not resolve.
        """
        kind = "super_admin" if reseller_id is None else "reseller_admin"
        with trace_operation("imei.check_admin_access", user_id=user_id, reseller_id=reseller_id):
            with self._timed(kind):
                result = await self._check_admin(user_id, reseller_id, imei)
        self._count(kind, result)
        return result

    async def _check_admin(self, user_id: int, reseller_id: Optional[int], imei: str) -> AccessResult:
        device_id = await self._resolve_device(imei)

        if reseller_id is None:
            return AccessResult(has_access=True, device_id=device_id)

        now = self.clock()
        technicians = await self.tenants.get_technicians_by_reseller(reseller_id, active_only=True)

        active_by_technician: Dict[int, List[Restriction]] = {}
        for technician in technicians:
            active = filter_active(await self.rules.get_restrictions(technician.technician_id), now)
            active_by_technician[technician.technician_id] = active
            if not active:
                # the resolver short-circuits on this technician anyway
                break

        tag_members = await self._load_tag_members(
            r for active in active_by_technician.values() for r in active
        )
        decision = self.cumulative.resolve(reseller_id, active_by_technician, device_id, tag_members)

        self.logger.info(
            "Reseller access resolved",
            user_id=user_id,
            reseller_id=reseller_id,
            device_id=device_id,
            technicians=len(technicians),
            allowed=decision.allowed
        )

        if not decision.allowed:
            await self.audit.log(user_id, AuditActions.IMEI_ACCESS_DENIED, "Device", imei)
            return AccessResult(
                has_access=False,
                message=ADMIN_DENIED_MESSAGE,
                reason=decision.reason or ADMIN_DENIED_REASON
            )

        return AccessResult(has_access=True, device_id=device_id)

    async def check_caller_access(self, caller: Caller, imei: str) -> AccessResult:
        """Dispatch an access check on the caller's role."""
        if isinstance(caller, TechnicianCaller):
            return await self.check_access(caller.technician_id, imei)
        if isinstance(caller, AdminCaller):
            return await self.check_admin_access(caller.user_id, caller.reseller_id, imei)
        raise TypeError(f"Unsupported caller: {caller!r}")

    async def record_verification(self, subject_id: int, device_id: int, payload: VerificationPayload,
                                  now: Optional[datetime] = None, imei: str = "") -> int:
        """Store a verification, merging into a recent one inside the gap window."""
        return await self.deduplicator.record(subject_id, device_id, payload, now or self.clock(), imei)

    async def get_device_data(self, caller: Caller, imei: str) -> DeviceDataResult:
        """Fetch device data once access is granted."""
        access = await self.check_caller_access(caller, imei)
        if not access.has_access:
            return DeviceDataResult(success=False, message=access.message, reason=access.reason)

        data = await self.devices.get_device_data(imei)
        if data is None:
            raise DeviceNotFoundError(imei, "Unable to fetch device data")

        await self.audit.log(self._audit_user(caller), AuditActions.IMEI_ACCESS, "Device", imei)
        return DeviceDataResult(success=True, data=data)

    async def verify_device(self, caller: Caller, request: VerificationRequest) -> VerificationResult:
        """Check access, then record a verification for the caller."""
        access = await self.check_caller_access(caller, request.imei)
        if not access.has_access:
            return VerificationResult(success=False, message=access.message)

        if isinstance(caller, TechnicianCaller):
            subject_id = caller.technician_id
        else:
            subject_id = ADMIN_TECHNICIAN_ID

        payload = VerificationPayload(
            verification_status=request.verification_status,
            notes=request.notes,
            gps_data=request.gps_data
        )
        verification_id = await self.record_verification(
            subject_id, access.device_id, payload, imei=request.imei
        )

        await self.audit.log(
            self._audit_user(caller), AuditActions.IMEI_VERIFICATION, "VerificationLog", str(verification_id)
        )
        return VerificationResult(success=True, verification_id=verification_id)

    async def get_verification_history(self, technician_id: int, from_date: Optional[datetime] = None,
                                       to_date: Optional[datetime] = None, page: int = 1,
                                       page_size: int = 50) -> VerificationHistoryPage:
        """Page through a technician's own verifications, newest first.

        Without dates the range is the current UTC day. Both bounds are
        inclusive.
        """
        if page < 1:
            raise ValidationError("page must be at least 1", {"page": page})
        if not 1 <= page_size <= MAX_HISTORY_PAGE_SIZE:
            raise ValidationError(
                f"page_size must be between 1 and {MAX_HISTORY_PAGE_SIZE}", {"page_size": page_size}
            )

        today = _start_of_day(self.clock())
        since = _as_utc(from_date) if from_date else today
        until = _as_utc(to_date) if to_date else today + timedelta(days=1) - timedelta(microseconds=1)
        if since > until:
            raise ValidationError("from_date must not be after to_date")

        logs, total = await self.logs.list_for_technician(technician_id, since, until, page, page_size)

        self.logger.debug(
            "Verification history read",
            technician_id=technician_id,
            page=page,
            returned=len(logs),
            total=total
        )
        return VerificationHistoryPage(
            items=[VerificationHistoryItem.from_log(log) for log in logs],
            total_count=total,
            page=page,
            page_size=page_size
        )

    async def _resolve_device(self, imei: str) -> int:
        device_id = await self.devices.resolve_device_id(imei)
        if device_id is None:
            self.logger.warning("Device not found", imei=imei)
            raise DeviceNotFoundError(imei)
        return device_id

    async def _load_tag_members(self, restrictions: Iterable[Restriction]) -> Dict[int, FrozenSet[int]]:
        tag_ids = {r.tag_id for r in restrictions if r.tag_id is not None}
        return {tag_id: frozenset(await self.rules.get_tag_device_members(tag_id)) for tag_id in tag_ids}

    def _audit_user(self, caller: Caller) -> Optional[int]:
        return caller.user_id if isinstance(caller, AdminCaller) else None

    def _timed(self, caller_kind: str):
        if self.metrics is None:
            return nullcontext()
        return self.metrics.time_operation("access_check_duration_seconds", caller_kind=caller_kind)

    def _count(self, caller_kind: str, result: AccessResult):
        if self.metrics is not None:
            decision = "allow" if result.has_access else "deny"
            self.metrics.increment_counter("access_decisions_total", caller_kind=caller_kind, decision=decision)

