"""
Time-windowed deduplication of verification records.
"""

import asyncio
from datetime import datetime, timedelta
from typing import Dict, Optional

from shared.logging import get_logger
from shared.metrics import MetricsCollector
from ..stores.base import VerificationLogStore
from .models import ADMIN_TECHNICIAN_ID, VerificationLog, VerificationPayload


class VerificationDeduplicator:
    """Keeps at most one verification log per subject and device per gap window.

    A verification inside the window overwrites the most recent row instead
    of inserting a new one. Administrative verifications (technician id 0)
    merge by device only: any recent log of the device is reused, whoever
    wrote it, so two admins verifying the same device collapse into one row.

    The lookup and the write run under a per-device asyncio lock, then
    against the view yielded by the store's ``serialized`` lock. The
    PostgreSQL store backs it with a transaction-scoped advisory lock and
    runs both statements on the locking connection, so worker processes
    sharing a database do not race and a record never needs a second
    pool connection.
    """

    def __init__(self, store: VerificationLogStore, gap_hours: int = 4,
                 metrics: Optional[MetricsCollector] = None):
        self.store = store
        self.gap = timedelta(hours=gap_hours)
        self.metrics = metrics
        self.logger = get_logger("imei_access.verification")
        self._locks: Dict[int, asyncio.Lock] = {}
        self._waiters: Dict[int, int] = {}

    async def record(self, technician_id: int, device_id: int, payload: VerificationPayload,
                     now: datetime, imei: str = "") -> int:
        """Insert or merge a verification and return its id."""
        key = device_id
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            async with lock, self.store.serialized(device_id) as logs:
                return await self._record_locked(logs, technician_id, device_id, payload, now, imei)
        finally:
            self._waiters[key] -= 1
            if not self._waiters[key]:
                del self._waiters[key]
                del self._locks[key]

    async def _record_locked(self, logs: VerificationLogStore, technician_id: int, device_id: int,
                             payload: VerificationPayload, now: datetime, imei: str) -> int:
        since = now - self.gap
        lookup_technician = None if technician_id == ADMIN_TECHNICIAN_ID else technician_id
        existing = await logs.find_recent(lookup_technician, device_id, since)

        if existing is not None:
            existing.verification_status = payload.verification_status
            existing.notes = payload.notes
            if payload.gps_data is not None:
                existing.latitude = payload.gps_data.latitude
                existing.longitude = payload.gps_data.longitude
                existing.gps_time = payload.gps_data.gps_time
            await logs.update(existing)

            self.logger.info(
                "Verification merged",
                verification_id=existing.verification_id,
                technician_id=technician_id,
                device_id=device_id
            )
            self._count("merged")
            return existing.verification_id

        log = VerificationLog(
            technician_id=technician_id,
            device_id=device_id,
            imei=imei,
            verification_status=payload.verification_status,
            notes=payload.notes,
            latitude=payload.gps_data.latitude if payload.gps_data else None,
            longitude=payload.gps_data.longitude if payload.gps_data else None,
            gps_time=payload.gps_data.gps_time if payload.gps_data else None,
            verified_at=now
        )
        verification_id = await logs.insert(log)

        self.logger.info(
            "Verification recorded",
            verification_id=verification_id,
            technician_id=technician_id,
            device_id=device_id
        )
        self._count("inserted")
        return verification_id

    def _count(self, outcome: str):
        if self.metrics is not None:
            self.metrics.increment_counter("verifications_total", outcome=outcome)
