"""
Verification log models.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field

from ..restrictions.models import GpsData

# Technician id recorded for administrative verifications
ADMIN_TECHNICIAN_ID = 0


@dataclass
class VerificationLog:
    """One stored verification of a device."""
    technician_id: int
    device_id: int
    verified_at: datetime
    imei: str = ""
    verification_status: str = "Verified"
    notes: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    gps_time: Optional[datetime] = None
    verification_id: Optional[int] = None


class VerificationPayload(BaseModel):
    """Mutable fields of a verification."""
    verification_status: str = Field("Verified", description="Verification outcome")
    notes: Optional[str] = Field(None, max_length=500, description="Free-form notes")
    gps_data: Optional[GpsData] = Field(None, description="GPS fix at verification time")


class VerificationRequest(VerificationPayload):
    """Request model for submitting a verification."""
    imei: str = Field(..., min_length=1, description="Device IMEI")


class VerificationResult(BaseModel):
    """Response model for a verification submission."""
    success: bool
    verification_id: Optional[int] = None
    message: Optional[str] = None


class VerificationHistoryItem(BaseModel):
    """One verification in a technician's history."""
    verification_id: int
    device_id: int
    imei: str
    verification_status: str
    notes: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    gps_time: Optional[datetime] = None
    verified_at: datetime

    @classmethod
    def from_log(cls, log: VerificationLog) -> "VerificationHistoryItem":
        return cls(
            verification_id=log.verification_id,
            device_id=log.device_id,
            imei=log.imei,
            verification_status=log.verification_status,
            notes=log.notes,
            latitude=log.latitude,
            longitude=log.longitude,
            gps_time=log.gps_time,
            verified_at=log.verified_at
        )


class VerificationHistoryPage(BaseModel):
    """A page of verification history, newest first."""
    items: List[VerificationHistoryItem]
    total_count: int
    page: int
    page_size: int
