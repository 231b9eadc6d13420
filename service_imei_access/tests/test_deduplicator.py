"""
Unit tests for the verification deduplicator.
"""

import asyncio
import pytest
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

from shared.errors import StoreError
from shared.metrics import MetricsCollector
from service_imei_access.app.restrictions.models import GpsData
from service_imei_access.app.stores.memory import InMemoryStore
from service_imei_access.app.verification.deduplicator import VerificationDeduplicator
from service_imei_access.app.verification.models import (
    ADMIN_TECHNICIAN_ID, VerificationLog, VerificationPayload
)

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


class TestVerificationDeduplicator:
    """Test cases for VerificationDeduplicator."""

    @pytest.fixture
    def store(self):
        return InMemoryStore()

    @pytest.fixture
    def metrics(self):
        return MetricsCollector("imei_access")

    @pytest.fixture
    def deduplicator(self, store, metrics):
        return VerificationDeduplicator(store, gap_hours=4, metrics=metrics)

    @pytest.fixture
    def gps(self):
        return GpsData(latitude=25.2, longitude=55.3, gps_time=NOW - timedelta(minutes=1))

    @pytest.mark.asyncio
    async def test_first_verification_inserts(self, deduplicator, store, metrics, gps):
        """Test a first verification creates a row."""
        payload = VerificationPayload(notes="Installed", gps_data=gps)

        verification_id = await deduplicator.record(1, 10, payload, NOW, imei="356938035643809")

        log = store.logs[verification_id]
        assert log.technician_id == 1
        assert log.device_id == 10
        assert log.imei == "356938035643809"
        assert log.notes == "Installed"
        assert log.latitude == 25.2
        assert log.verified_at == NOW
        assert metrics.get_sample("verifications_total", outcome="inserted") == 1

    @pytest.mark.asyncio
    async def test_repeat_inside_window_merges(self, deduplicator, store, metrics):
        """Test a repeat inside the gap overwrites the same row."""
        first = await deduplicator.record(1, 10, VerificationPayload(notes="first"), NOW)
        second = await deduplicator.record(
            1, 10,
            VerificationPayload(verification_status="Failed", notes="second"),
            NOW + timedelta(hours=3, minutes=59)
        )

        assert second == first
        assert len(store.logs) == 1
        assert store.logs[first].notes == "second"
        assert store.logs[first].verification_status == "Failed"
        # verified_at is not moved by a merge
        assert store.logs[first].verified_at == NOW
        assert metrics.get_sample("verifications_total", outcome="merged") == 1

    @pytest.mark.asyncio
    async def test_merge_keeps_gps_when_not_supplied(self, deduplicator, store, gps):
        """Test a merge without GPS keeps the stored fix."""
        first = await deduplicator.record(1, 10, VerificationPayload(gps_data=gps), NOW)
        await deduplicator.record(1, 10, VerificationPayload(notes="again"), NOW + timedelta(hours=1))

        assert store.logs[first].latitude == 25.2
        assert store.logs[first].notes == "again"

    @pytest.mark.asyncio
    async def test_window_boundary_is_inclusive(self, deduplicator, store):
        """Test a log exactly at the gap edge is still merged."""
        first = await deduplicator.record(1, 10, VerificationPayload(), NOW)
        second = await deduplicator.record(1, 10, VerificationPayload(), NOW + timedelta(hours=4))

        assert second == first

    @pytest.mark.asyncio
    async def test_after_window_inserts_new_row(self, deduplicator, store):
        """Test a verification past the gap creates a new row."""
        first = await deduplicator.record(1, 10, VerificationPayload(), NOW)
        second = await deduplicator.record(1, 10, VerificationPayload(), NOW + timedelta(hours=4, seconds=1))

        assert second != first
        assert len(store.logs) == 2

    @pytest.mark.asyncio
    async def test_different_technicians_do_not_merge(self, deduplicator, store):
        """Test technicians each get their own row for the same device."""
        first = await deduplicator.record(1, 10, VerificationPayload(), NOW)
        second = await deduplicator.record(2, 10, VerificationPayload(), NOW)

        assert first != second

    @pytest.mark.asyncio
    async def test_admin_merges_by_device_only(self, deduplicator, store):
        """Test administrative verifications collapse into any recent row of the device."""
        technician_row = await deduplicator.record(1, 10, VerificationPayload(notes="tech"), NOW)
        admin_row = await deduplicator.record(
            ADMIN_TECHNICIAN_ID, 10, VerificationPayload(notes="admin"), NOW + timedelta(minutes=5)
        )

        assert admin_row == technician_row
        assert store.logs[technician_row].technician_id == 1
        assert store.logs[technician_row].notes == "admin"

    @pytest.mark.asyncio
    async def test_two_admins_collapse(self, deduplicator, store):
        """Test two admins verifying a device inside the window share one row."""
        first = await deduplicator.record(ADMIN_TECHNICIAN_ID, 10, VerificationPayload(notes="a"), NOW)
        second = await deduplicator.record(
            ADMIN_TECHNICIAN_ID, 10, VerificationPayload(notes="b"), NOW + timedelta(hours=1)
        )

        assert first == second
        assert store.logs[first].technician_id == ADMIN_TECHNICIAN_ID

    @pytest.mark.asyncio
    async def test_concurrent_requests_produce_one_row(self, deduplicator, store):
        """Test concurrent verifications for one pair are serialized."""
        original_find = store.find_recent

        async def slow_find(*args):
            await asyncio.sleep(0.01)
            return await original_find(*args)

        store.find_recent = slow_find

        ids = await asyncio.gather(*[
            deduplicator.record(1, 10, VerificationPayload(notes=str(i)), NOW) for i in range(5)
        ])

        assert len(set(ids)) == 1
        assert len(store.logs) == 1
        assert deduplicator._locks == {}

    @pytest.mark.asyncio
    async def test_store_failure_propagates(self, store):
        """Test store errors are not swallowed."""
        store.find_recent = AsyncMock(side_effect=StoreError("verification_logs", "find_recent"))
        store.insert = AsyncMock()
        deduplicator = VerificationDeduplicator(store)

        with pytest.raises(StoreError):
            await deduplicator.record(1, 10, VerificationPayload(), NOW)

        store.insert.assert_not_called()
        assert deduplicator._locks == {}

    @pytest.mark.asyncio
    async def test_admin_and_technician_are_serialized_per_device(self, deduplicator, store):
        """Test an admin and a technician verifying one device at once share a row."""
        original_find = store.find_recent

        async def slow_find(*args):
            await asyncio.sleep(0.01)
            return await original_find(*args)

        store.find_recent = slow_find

        ids = await asyncio.gather(
            deduplicator.record(1, 10, VerificationPayload(), NOW),
            deduplicator.record(ADMIN_TECHNICIAN_ID, 10, VerificationPayload(), NOW),
        )

        assert ids[0] == ids[1]
        assert len(store.logs) == 1

    @pytest.mark.asyncio
    async def test_zero_gap_only_merges_same_instant(self, store):
        """Test a zero gap window still dedupes identical timestamps."""
        deduplicator = VerificationDeduplicator(store, gap_hours=0)
        store.logs[1] = VerificationLog(technician_id=1, device_id=10, verified_at=NOW, verification_id=1)
        store._log_ids = iter(range(2, 100))

        assert await deduplicator.record(1, 10, VerificationPayload(), NOW) == 1
        assert await deduplicator.record(1, 10, VerificationPayload(), NOW + timedelta(seconds=1)) == 2
