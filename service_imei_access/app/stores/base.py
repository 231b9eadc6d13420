"""
Store interfaces consumed by the IMEI Access service.

Implementations raise ``shared.errors.StoreError`` on backend failures; the
service lets those propagate to its caller.
"""

from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, List, Optional, Tuple

from ..restrictions.models import DeviceData, Restriction, Technician
from ..verification.models import VerificationLog


class RuleStore(ABC):
    """Restriction rules and tag membership."""

    @abstractmethod
    async def get_restrictions(self, technician_id: int) -> List[Restriction]:
        """All stored restrictions of a technician, in retrieval order."""

    @abstractmethod
    async def get_tag_device_members(self, tag_id: int) -> List[int]:
        """Device ids of a tag's Device-type items."""


class TenantDirectory(ABC):
    """Technicians and their reseller membership."""

    @abstractmethod
    async def get_technician(self, technician_id: int) -> Optional[Technician]:
        """A technician by id, or None."""

    @abstractmethod
    async def get_technicians_by_reseller(self, reseller_id: int,
                                          active_only: bool = True) -> List[Technician]:
        """Technicians of a reseller."""


class DeviceDirectory(ABC):
    """IMEI lookup and device telemetry."""

    @abstractmethod
    async def resolve_device_id(self, imei: str) -> Optional[int]:
        """Device id for an IMEI, or None when unknown."""

    @abstractmethod
    async def get_device_data(self, imei: str) -> Optional[DeviceData]:
        """Current device snapshot, or None when unavailable."""


class VerificationLogStore(ABC):
    """Verification log persistence."""

    @abstractmethod
    async def find_recent(self, technician_id: Optional[int], device_id: int,
                          since: datetime) -> Optional[VerificationLog]:
        """Most recent log of a device verified at or after ``since``.

        ``technician_id=None`` matches logs of any technician.
        """

    @abstractmethod
    async def insert(self, log: VerificationLog) -> int:
        """Store a new log and return its id."""

    @abstractmethod
    async def update(self, log: VerificationLog) -> None:
        """Overwrite an existing log's mutable fields."""

    @abstractmethod
    async def count_since(self, technician_id: int, since: datetime) -> int:
        """Number of logs of a technician verified at or after ``since``."""

    @abstractmethod
    async def list_for_technician(self, technician_id: int, since: datetime, until: datetime,
                                  page: int, page_size: int) -> Tuple[List[VerificationLog], int]:
        """One page of a technician's logs verified within ``[since, until]``.

        Newest first; also returns the total count across all pages.
        """

    @asynccontextmanager
    async def serialized(self, device_id: int) -> AsyncIterator["VerificationLogStore"]:
        """Hold an exclusive lock on a device's verification rows.

        Yields the store to run the find-then-write against while the lock
        is held. The default holds nothing and yields ``self``; stores shared
        between processes override it.
        """
        yield self
