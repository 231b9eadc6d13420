"""
In-memory store for local runs and tests.
"""

import itertools
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from shared.errors import StoreError
from shared.logging import get_logger
from ..restrictions.models import DeviceData, Restriction, Tag, Technician
from ..verification.models import VerificationLog
from .base import DeviceDirectory, RuleStore, TenantDirectory, VerificationLogStore


class InMemoryStore(RuleStore, TenantDirectory, DeviceDirectory, VerificationLogStore):
    """Implements every store interface over plain dictionaries.

    Restrictions come back in insertion order. Tags are held by reference,
    so editing a tag's items changes what restrictions on it cover.
    """

    def __init__(self):
        self.logger = get_logger("imei_access.store.memory")
        self.technicians: Dict[int, Technician] = {}
        self.restrictions: List[Restriction] = []
        self.tags: Dict[int, Tag] = {}
        self.devices: Dict[str, int] = {}
        self.device_data: Dict[str, DeviceData] = {}
        self.logs: Dict[int, VerificationLog] = {}
        self._log_ids = itertools.count(1)

    # Seeding

    def add_technician(self, technician: Technician) -> Technician:
        self.technicians[technician.technician_id] = technician
        return technician

    def add_restriction(self, restriction: Restriction) -> Restriction:
        self.restrictions.append(restriction)
        return restriction

    def add_tag(self, tag: Tag) -> Tag:
        self.tags[tag.tag_id] = tag
        return tag

    def add_device(self, imei: str, device_id: int, data: Optional[DeviceData] = None):
        self.devices[imei] = device_id
        if data is not None:
            self.device_data[imei] = data

    # RuleStore

    async def get_restrictions(self, technician_id: int) -> List[Restriction]:
        return [r for r in self.restrictions if r.technician_id == technician_id]

    async def get_tag_device_members(self, tag_id: int) -> List[int]:
        tag = self.tags.get(tag_id)
        if tag is None:
            self.logger.warning("Restriction references unknown tag", tag_id=tag_id)
            return []
        return tag.device_ids()

    # TenantDirectory

    async def get_technician(self, technician_id: int) -> Optional[Technician]:
        return self.technicians.get(technician_id)

    async def get_technicians_by_reseller(self, reseller_id: int,
                                          active_only: bool = True) -> List[Technician]:
        return [
            t for t in self.technicians.values()
            if t.reseller_id == reseller_id and (t.is_active or not active_only)
        ]

    # DeviceDirectory

    async def resolve_device_id(self, imei: str) -> Optional[int]:
        return self.devices.get(imei)

    async def get_device_data(self, imei: str) -> Optional[DeviceData]:
        return self.device_data.get(imei)

    # VerificationLogStore

    async def find_recent(self, technician_id: Optional[int], device_id: int,
                          since: datetime) -> Optional[VerificationLog]:
        candidates = [
            log for log in self.logs.values()
            if log.device_id == device_id
            and log.verified_at >= since
            and (technician_id is None or log.technician_id == technician_id)
        ]
        if not candidates:
            return None
        latest = max(candidates, key=lambda log: log.verified_at)
        return replace(latest)

    async def insert(self, log: VerificationLog) -> int:
        verification_id = next(self._log_ids)
        self.logs[verification_id] = replace(log, verification_id=verification_id)
        return verification_id

    async def update(self, log: VerificationLog) -> None:
        if log.verification_id not in self.logs:
            raise StoreError("verification_log", "update", f"Verification {log.verification_id} not found")
        self.logs[log.verification_id] = replace(log)

    async def count_since(self, technician_id: int, since: datetime) -> int:
        return sum(
            1 for log in self.logs.values()
            if log.technician_id == technician_id and log.verified_at >= since
        )

    async def list_for_technician(self, technician_id: int, since: datetime, until: datetime,
                                  page: int, page_size: int) -> Tuple[List[VerificationLog], int]:
        matching = sorted(
            (log for log in self.logs.values()
             if log.technician_id == technician_id and since <= log.verified_at <= until),
            key=lambda log: log.verified_at,
            reverse=True
        )
        offset = (page - 1) * page_size
        return [replace(log) for log in matching[offset:offset + page_size]], len(matching)

    async def health_check(self) -> bool:
        return True
