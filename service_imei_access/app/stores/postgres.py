"""
PostgreSQL store for the IMEI Access service.
"""

import json
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, List, Optional, Tuple

import asyncpg

from shared.errors import StoreError
from shared.logging import get_logger
from ..restrictions.models import DeviceData, Restriction, TagEntityType, Technician, TechnicianStatus
from ..verification.models import VerificationLog
from .base import DeviceDirectory, RuleStore, TenantDirectory, VerificationLogStore

# First key of the two-key advisory locks taken on verification rows
VERIFICATION_LOCK_CLASS = 4004

SCHEMA = """
    CREATE TABLE IF NOT EXISTS technicians (
        technician_id INTEGER PRIMARY KEY,
        user_id INTEGER NOT NULL,
        reseller_id INTEGER,
        daily_limit INTEGER NOT NULL DEFAULT 0,
        status SMALLINT NOT NULL DEFAULT 1
    );

    CREATE TABLE IF NOT EXISTS tags (
        tag_id INTEGER PRIMARY KEY,
        tag_name VARCHAR(255) NOT NULL,
        scope SMALLINT NOT NULL DEFAULT 1,
        status SMALLINT NOT NULL DEFAULT 1
    );

    CREATE TABLE IF NOT EXISTS tag_items (
        tag_item_id SERIAL PRIMARY KEY,
        tag_id INTEGER NOT NULL REFERENCES tags(tag_id) ON DELETE CASCADE,
        entity_type SMALLINT NOT NULL,
        entity_id BIGINT NOT NULL,
        entity_identifier VARCHAR(255),
        created_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW()
    );

    CREATE TABLE IF NOT EXISTS imei_restrictions (
        restriction_id SERIAL PRIMARY KEY,
        technician_id INTEGER NOT NULL REFERENCES technicians(technician_id) ON DELETE CASCADE,
        device_id INTEGER,
        tag_id INTEGER REFERENCES tags(tag_id),
        access_type SMALLINT NOT NULL DEFAULT 1,
        priority INTEGER NOT NULL DEFAULT 0,
        reason TEXT,
        is_permanent BOOLEAN NOT NULL DEFAULT FALSE,
        valid_from TIMESTAMP WITH TIME ZONE,
        valid_until TIMESTAMP WITH TIME ZONE,
        notes TEXT,
        status SMALLINT NOT NULL DEFAULT 1,
        created_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW(),
        CHECK ((device_id IS NULL) <> (tag_id IS NULL))
    );

    CREATE TABLE IF NOT EXISTS devices (
        device_id INTEGER PRIMARY KEY,
        imei VARCHAR(32) NOT NULL UNIQUE,
        data JSONB
    );

    CREATE TABLE IF NOT EXISTS verification_logs (
        verification_id SERIAL PRIMARY KEY,
        technician_id INTEGER NOT NULL,
        device_id INTEGER NOT NULL,
        imei VARCHAR(32) NOT NULL DEFAULT '',
        verification_status VARCHAR(50) NOT NULL DEFAULT 'Verified',
        notes VARCHAR(500),
        latitude DOUBLE PRECISION,
        longitude DOUBLE PRECISION,
        gps_time TIMESTAMP WITH TIME ZONE,
        verified_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW()
    );

    CREATE INDEX IF NOT EXISTS idx_restrictions_technician ON imei_restrictions(technician_id);
    CREATE INDEX IF NOT EXISTS idx_tag_items_tag ON tag_items(tag_id, entity_type);
    CREATE INDEX IF NOT EXISTS idx_technicians_reseller ON technicians(reseller_id, status);
    CREATE INDEX IF NOT EXISTS idx_verification_device ON verification_logs(device_id, verified_at DESC);
    CREATE INDEX IF NOT EXISTS idx_verification_technician ON verification_logs(technician_id, verified_at DESC);
"""


class PostgresStore(RuleStore, TenantDirectory, DeviceDirectory, VerificationLogStore):
    """PostgreSQL implementation of every store interface."""

    def __init__(self, dsn: str, min_size: int = 2, max_size: int = 10, command_timeout: float = 30):
        self.dsn = dsn
        self.min_size = min_size
        self.max_size = max_size
        self.command_timeout = command_timeout
        self.logger = get_logger("imei_access.store.postgres")
        self.pool: Optional[asyncpg.Pool] = None

    async def start(self):
        """Open the pool and create tables."""
        try:
            self.pool = await asyncpg.create_pool(
                self.dsn,
                min_size=self.min_size,
                max_size=self.max_size,
                command_timeout=self.command_timeout
            )
            async with self.pool.acquire() as conn:
                await conn.execute(SCHEMA)

            self.logger.info("PostgreSQL store started")

        except (asyncpg.PostgresError, OSError) as e:
            self.logger.error("Failed to start PostgreSQL store", error=str(e))
            raise StoreError("postgres", "start") from e

    async def stop(self):
        """Close the pool."""
        if self.pool:
            await self.pool.close()
            self.pool = None
            self.logger.info("PostgreSQL store stopped")

    @asynccontextmanager
    async def _connection(self, store: str, operation: str, conn: Optional[asyncpg.Connection] = None):
        if conn is None and self.pool is None:
            raise StoreError(store, operation, "Store not started")
        try:
            if conn is not None:
                yield conn
            else:
                async with self.pool.acquire() as acquired:
                    yield acquired
        except (asyncpg.PostgresError, OSError) as e:
            self.logger.error("Store operation failed", store=store, operation=operation, error=str(e))
            raise StoreError(store, operation) from e

    # RuleStore

    async def get_restrictions(self, technician_id: int) -> List[Restriction]:
        async with self._connection("rules", "get_restrictions") as conn:
            rows = await conn.fetch("""
                SELECT * FROM imei_restrictions
                WHERE technician_id = $1
                ORDER BY restriction_id
            """, technician_id)

        return [Restriction.from_row(dict(row)) for row in rows]

    async def get_tag_device_members(self, tag_id: int) -> List[int]:
        async with self._connection("rules", "get_tag_device_members") as conn:
            rows = await conn.fetch("""
                SELECT entity_id FROM tag_items
                WHERE tag_id = $1 AND entity_type = $2
                ORDER BY tag_item_id
            """, tag_id, int(TagEntityType.DEVICE))

        return [int(row['entity_id']) for row in rows]

    # TenantDirectory

    async def get_technician(self, technician_id: int) -> Optional[Technician]:
        async with self._connection("tenants", "get_technician") as conn:
            row = await conn.fetchrow("""
                SELECT * FROM technicians WHERE technician_id = $1
            """, technician_id)

        return self._row_to_technician(row) if row else None

    async def get_technicians_by_reseller(self, reseller_id: int,
                                          active_only: bool = True) -> List[Technician]:
        async with self._connection("tenants", "get_technicians_by_reseller") as conn:
            if active_only:
                rows = await conn.fetch("""
                    SELECT * FROM technicians
                    WHERE reseller_id = $1 AND status = $2
                    ORDER BY technician_id
                """, reseller_id, int(TechnicianStatus.ACTIVE))
            else:
                rows = await conn.fetch("""
                    SELECT * FROM technicians
                    WHERE reseller_id = $1
                    ORDER BY technician_id
                """, reseller_id)

        return [self._row_to_technician(row) for row in rows]

    # DeviceDirectory

    async def resolve_device_id(self, imei: str) -> Optional[int]:
        async with self._connection("devices", "resolve_device_id") as conn:
            device_id = await conn.fetchval("SELECT device_id FROM devices WHERE imei = $1", imei)

        return int(device_id) if device_id is not None else None

    async def get_device_data(self, imei: str) -> Optional[DeviceData]:
        async with self._connection("devices", "get_device_data") as conn:
            row = await conn.fetchrow("SELECT device_id, imei, data FROM devices WHERE imei = $1", imei)

        if not row or row['data'] is None:
            return None
        data = row['data']
        if isinstance(data, str):
            data = json.loads(data)
        return DeviceData.model_validate({**data, "device_id": row['device_id'], "imei": row['imei']})

    # VerificationLogStore

    async def find_recent(self, technician_id: Optional[int], device_id: int, since: datetime,
                          conn: Optional[asyncpg.Connection] = None) -> Optional[VerificationLog]:
        async with self._connection("verification_logs", "find_recent", conn) as conn:
            if technician_id is None:
                row = await conn.fetchrow("""
                    SELECT * FROM verification_logs
                    WHERE device_id = $1 AND verified_at >= $2
                    ORDER BY verified_at DESC
                    LIMIT 1
                """, device_id, since)
            else:
                row = await conn.fetchrow("""
                    SELECT * FROM verification_logs
                    WHERE technician_id = $1 AND device_id = $2 AND verified_at >= $3
                    ORDER BY verified_at DESC
                    LIMIT 1
                """, technician_id, device_id, since)

        return self._row_to_log(row) if row else None

    async def insert(self, log: VerificationLog, conn: Optional[asyncpg.Connection] = None) -> int:
        async with self._connection("verification_logs", "insert", conn) as conn:
            verification_id = await conn.fetchval("""
                INSERT INTO verification_logs (
                    technician_id, device_id, imei, verification_status, notes,
                    latitude, longitude, gps_time, verified_at
                ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
                RETURNING verification_id
            """,
                log.technician_id, log.device_id, log.imei, log.verification_status, log.notes,
                log.latitude, log.longitude, log.gps_time, log.verified_at
            )

        return verification_id

    async def update(self, log: VerificationLog, conn: Optional[asyncpg.Connection] = None) -> None:
        async with self._connection("verification_logs", "update", conn) as conn:
            result = await conn.execute("""
                UPDATE verification_logs SET
                    verification_status = $2,
                    notes = $3,
                    latitude = $4,
                    longitude = $5,
                    gps_time = $6
                WHERE verification_id = $1
            """,
                log.verification_id, log.verification_status, log.notes,
                log.latitude, log.longitude, log.gps_time
            )

        if result != "UPDATE 1":
            raise StoreError("verification_logs", "update", f"Verification {log.verification_id} not found")

    @asynccontextmanager
    async def serialized(self, device_id: int) -> AsyncIterator["LockedVerificationLogs"]:
        """Transaction-scoped advisory lock on the device.

        The lookup and the write must run on the locking connection, so this
        yields a view bound to it; the lock is released on commit or rollback.
        """
        async with self._connection("verification_logs", "lock") as conn:
            async with conn.transaction():
                await conn.execute("SELECT pg_advisory_xact_lock($1, $2)", VERIFICATION_LOCK_CLASS, device_id)
                yield LockedVerificationLogs(self, conn)

    async def count_since(self, technician_id: int, since: datetime) -> int:
        async with self._connection("verification_logs", "count_since") as conn:
            count = await conn.fetchval("""
                SELECT COUNT(*) FROM verification_logs
                WHERE technician_id = $1 AND verified_at >= $2
            """, technician_id, since)

        return count or 0

    async def list_for_technician(self, technician_id: int, since: datetime, until: datetime,
                                  page: int, page_size: int) -> Tuple[List[VerificationLog], int]:
        async with self._connection("verification_logs", "list_for_technician") as conn:
            total = await conn.fetchval("""
                SELECT COUNT(*) FROM verification_logs
                WHERE technician_id = $1 AND verified_at BETWEEN $2 AND $3
            """, technician_id, since, until)
            rows = await conn.fetch("""
                SELECT * FROM verification_logs
                WHERE technician_id = $1 AND verified_at BETWEEN $2 AND $3
                ORDER BY verified_at DESC, verification_id DESC
                LIMIT $4 OFFSET $5
            """, technician_id, since, until, page_size, (page - 1) * page_size)

        return [self._row_to_log(row) for row in rows], total or 0

    def _row_to_technician(self, row) -> Technician:
        return Technician(
            technician_id=row['technician_id'],
            user_id=row['user_id'],
            reseller_id=row['reseller_id'],
            status=TechnicianStatus(row['status']),
            daily_limit=row['daily_limit']
        )

    def _row_to_log(self, row) -> VerificationLog:
        return VerificationLog(
            verification_id=row['verification_id'],
            technician_id=row['technician_id'],
            device_id=row['device_id'],
            imei=row['imei'],
            verification_status=row['verification_status'],
            notes=row['notes'],
            latitude=row['latitude'],
            longitude=row['longitude'],
            gps_time=row['gps_time'],
            verified_at=row['verified_at']
        )

    async def health_check(self) -> bool:
        """Check database health."""
        try:
            async with self._connection("postgres", "health_check") as conn:
                await conn.fetchval("SELECT 1")
                return True
        except StoreError:
            return False


class LockedVerificationLogs:
    """Verification log operations pinned to the connection holding a device lock."""

    def __init__(self, store: PostgresStore, conn: asyncpg.Connection):
        self.store = store
        self.conn = conn

    async def find_recent(self, technician_id: Optional[int], device_id: int,
                          since: datetime) -> Optional[VerificationLog]:
        return await self.store.find_recent(technician_id, device_id, since, conn=self.conn)

    async def insert(self, log: VerificationLog) -> int:
        return await self.store.insert(log, conn=self.conn)

    async def update(self, log: VerificationLog) -> None:
        await self.store.update(log, conn=self.conn)
