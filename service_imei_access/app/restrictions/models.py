"""
Restriction data models for the IMEI Access service.
"""

from typing import Any, Collection, FrozenSet, List, Mapping, Optional, Union
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum, IntEnum

from pydantic import BaseModel, Field

from shared.errors import ValidationError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AccessType(IntEnum):
    """Restriction access types."""
    ALLOW = 1
    DENY = 2


class RestrictionStatus(IntEnum):
    """Restriction lifecycle status."""
    INACTIVE = 0
    ACTIVE = 1
    EXPIRED = 2


class TechnicianStatus(IntEnum):
    """Technician lifecycle status."""
    INACTIVE = 0
    ACTIVE = 1
    SUSPENDED = 2


class TagScope(IntEnum):
    """Visibility scope of a tag."""
    GLOBAL = 0
    RESELLER = 1
    USER = 2


class TagEntityType(IntEnum):
    """Entity types that can be tagged."""
    DEVICE = 1
    TECHNICIAN = 2
    RESELLER = 3
    USER = 4


class ListMode(str, Enum):
    """Default handling for devices no restriction matches."""
    UNRESTRICTED = "unrestricted"
    ALLOW_LIST = "allow_list"
    DENY_LIST = "deny_list"


@dataclass(frozen=True)
class DeviceTarget:
    """Restriction aimed at a single device."""
    device_id: int


@dataclass(frozen=True)
class TagTarget:
    """Restriction aimed at every device in a tag."""
    tag_id: int


RestrictionTarget = Union[DeviceTarget, TagTarget]


@dataclass
class Restriction:
    """Allow/deny rule for one technician and one target."""
    restriction_id: int
    technician_id: int
    target: RestrictionTarget
    access_type: AccessType = AccessType.ALLOW
    priority: int = 0
    is_permanent: bool = False
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None
    status: RestrictionStatus = RestrictionStatus.ACTIVE
    reason: Optional[str] = None
    notes: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    @property
    def device_id(self) -> Optional[int]:
        return self.target.device_id if isinstance(self.target, DeviceTarget) else None

    @property
    def tag_id(self) -> Optional[int]:
        return self.target.tag_id if isinstance(self.target, TagTarget) else None

    @property
    def is_allow(self) -> bool:
        return self.access_type == AccessType.ALLOW

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Restriction":
        """Build a restriction from a storage row with nullable target columns.

        Raises ValidationError when the row names both a device and a tag,
        or neither, or carries an access type or status outside the enums.
        """
        device_id = row.get("device_id")
        tag_id = row.get("tag_id")
        if (device_id is None) == (tag_id is None):
            raise ValidationError(
                "Restriction must target exactly one of device or tag",
                {"restriction_id": row.get("restriction_id"), "device_id": device_id, "tag_id": tag_id}
            )
        target: RestrictionTarget = DeviceTarget(int(device_id)) if device_id is not None else TagTarget(int(tag_id))

        return cls(
            restriction_id=row["restriction_id"],
            technician_id=row["technician_id"],
            target=target,
            access_type=_enum_column(AccessType, row, "access_type"),
            priority=row.get("priority") or 0,
            is_permanent=bool(row.get("is_permanent")),
            valid_from=row.get("valid_from"),
            valid_until=row.get("valid_until"),
            status=_enum_column(RestrictionStatus, row, "status"),
            reason=row.get("reason"),
            notes=row.get("notes"),
            created_at=row.get("created_at") or utcnow()
        )


def _enum_column(enum_cls, row: Mapping[str, Any], column: str):
    value = row.get(column)
    try:
        return enum_cls(value)
    except ValueError:
        raise ValidationError(
            f"Restriction has unknown {column}",
            {"restriction_id": row.get("restriction_id"), column: value}
        )


@dataclass
class Technician:
    """Technician as seen by the access engine."""
    technician_id: int
    user_id: int
    reseller_id: Optional[int] = None
    status: TechnicianStatus = TechnicianStatus.ACTIVE
    daily_limit: int = 0

    @property
    def is_active(self) -> bool:
        return self.status == TechnicianStatus.ACTIVE


@dataclass
class TagItem:
    """Membership of one entity in a tag."""
    entity_type: TagEntityType
    entity_id: int
    entity_identifier: Optional[str] = None


@dataclass
class Tag:
    """Named, mutable group of entities."""
    tag_id: int
    name: str
    scope: TagScope = TagScope.RESELLER
    items: List[TagItem] = field(default_factory=list)

    def device_ids(self) -> List[int]:
        """Entity ids of the Device members, in insertion order."""
        return [item.entity_id for item in self.items if item.entity_type == TagEntityType.DEVICE]


@dataclass
class AccessDecision:
    """Verdict of a resolver."""
    allowed: bool
    mode: Optional[ListMode] = None
    matched_restriction_id: Optional[int] = None
    reason: Optional[str] = None


TagMembers = Mapping[int, Collection[int]]


def expand_devices(restriction: Restriction, tag_members: TagMembers) -> FrozenSet[int]:
    """Device ids a restriction covers, expanding tag targets."""
    if isinstance(restriction.target, DeviceTarget):
        return frozenset((restriction.target.device_id,))
    return frozenset(tag_members.get(restriction.target.tag_id, ()))


# Callers

@dataclass(frozen=True)
class TechnicianCaller:
    """A technician acting for themselves."""
    technician_id: int

    @property
    def kind(self) -> str:
        return "technician"


@dataclass(frozen=True)
class AdminCaller:
    """An administrator; no reseller means super-admin."""
    user_id: int
    reseller_id: Optional[int] = None

    @property
    def kind(self) -> str:
        return "super_admin" if self.reseller_id is None else "reseller_admin"


Caller = Union[TechnicianCaller, AdminCaller]


# API models

class GpsData(BaseModel):
    """GPS fix reported by a device or captured at verification."""
    latitude: float
    longitude: float
    altitude: Optional[float] = None
    speed: Optional[float] = None
    heading: Optional[float] = None
    satellites: Optional[int] = None
    signal_strength: Optional[int] = None
    ignition_on: Optional[bool] = None
    battery_voltage: Optional[float] = None
    external_voltage: Optional[float] = None
    gps_time: datetime
    server_time: Optional[datetime] = None


class VehicleInfo(BaseModel):
    """Vehicle the device is fitted to."""
    vehicle_id: Optional[int] = None
    plate_number: Optional[str] = None
    vehicle_name: Optional[str] = None
    make: Optional[str] = None
    model: Optional[str] = None
    year: Optional[int] = None
    vin: Optional[str] = None
    owner_name: Optional[str] = None


class DeviceData(BaseModel):
    """Device snapshot returned after access is granted."""
    device_id: int
    imei: str
    serial_number: Optional[str] = None
    device_model: Optional[str] = None
    firmware_version: Optional[str] = None
    is_online: bool = False
    last_gps_data: Optional[GpsData] = None
    vehicle_info: Optional[VehicleInfo] = None


class AccessResult(BaseModel):
    """Outcome of an access check."""
    has_access: bool = Field(..., description="Whether the caller may use the device")
    device_id: Optional[int] = Field(None, description="Resolved device ID")
    message: Optional[str] = Field(None, description="Display message on denial")
    reason: Optional[str] = Field(None, description="Restriction reason for audit")
