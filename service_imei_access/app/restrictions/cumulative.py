"""
Reseller-wide access aggregation for administrative callers.
"""

from typing import List, Mapping, Set

from shared.logging import get_logger
from .models import AccessDecision, Restriction, TagMembers, expand_devices


class CumulativeResolver:
    """Aggregates every technician's restrictions under a reseller.

    An administrator sees the union of what their technicians could see, so
    the rule is global: one unrestricted technician opens everything; else a
    device must be in the merged allow set when any Allow row exists, or
    outside the merged deny set otherwise. This differs from the
    per-technician default in ``RestrictionEngine``.
    """

    def __init__(self):
        self.logger = get_logger("imei_access.cumulative")

    def resolve(self, reseller_id: int, active_by_technician: Mapping[int, List[Restriction]],
                device_id: int, tag_members: TagMembers) -> AccessDecision:
        """Resolve admin access from each technician's active restriction set."""
        if not active_by_technician:
            self.logger.debug("Reseller has no active technicians", reseller_id=reseller_id)
            return AccessDecision(allowed=True)

        allowed: Set[int] = set()
        denied: Set[int] = set()

        for technician_id, active in active_by_technician.items():
            if not active:
                self.logger.debug(
                    "Unrestricted technician opens reseller access",
                    reseller_id=reseller_id,
                    technician_id=technician_id
                )
                return AccessDecision(allowed=True)

            for restriction in active:
                devices = expand_devices(restriction, tag_members)
                if restriction.is_allow:
                    allowed.update(devices)
                else:
                    denied.update(devices)

        self.logger.debug(
            "Merged reseller restrictions",
            reseller_id=reseller_id,
            technicians=len(active_by_technician),
            allowed_devices=len(allowed),
            denied_devices=len(denied)
        )

        if allowed:
            if device_id in allowed:
                return AccessDecision(allowed=True)
            return AccessDecision(
                allowed=False,
                reason="IMEI not found in any technician's allowed restrictions"
            )

        if device_id in denied:
            return AccessDecision(
                allowed=False,
                reason="IMEI is denied by a technician restriction of this reseller"
            )
        return AccessDecision(allowed=True)
