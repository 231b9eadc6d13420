"""
Restriction resolution for a single technician.
"""

from datetime import datetime
from typing import Iterable, List

from shared.logging import get_logger
from .models import (
    AccessDecision, AccessType, DeviceTarget, ListMode, Restriction,
    RestrictionStatus, TagMembers, TagTarget
)


def is_active(restriction: Restriction, now: datetime) -> bool:
    """Whether a restriction is in effect at ``now``."""
    if restriction.status != RestrictionStatus.ACTIVE:
        return False
    if restriction.is_permanent:
        return True
    if restriction.valid_from is None or restriction.valid_until is None:
        return False
    return restriction.valid_from <= now <= restriction.valid_until


def filter_active(restrictions: Iterable[Restriction], now: datetime) -> List[Restriction]:
    """Keep only restrictions in effect at ``now``, preserving order."""
    return [r for r in restrictions if is_active(r, now)]


def infer_mode(active: List[Restriction]) -> ListMode:
    """Classify an active restriction set.

    Any Allow row puts the set in allow-list mode, even alongside Deny rows.
    """
    if not active:
        return ListMode.UNRESTRICTED
    if any(r.access_type == AccessType.ALLOW for r in active):
        return ListMode.ALLOW_LIST
    return ListMode.DENY_LIST


class RestrictionEngine:
    """Resolves one technician's access to one device.

    Matching is first-match-wins in retrieval order: direct device rules,
    then tag rules, then the default for the inferred mode. ``priority`` is
    carried on restrictions but not consulted.
    """

    def __init__(self):
        self.logger = get_logger("imei_access.restrictions")

    def resolve(self, active: List[Restriction], device_id: int,
                tag_members: TagMembers) -> AccessDecision:
        """Resolve access over an already-filtered restriction set."""
        mode = infer_mode(active)

        self.logger.debug(
            "Resolving device access",
            device_id=device_id,
            active_restrictions=len(active),
            mode=mode.value
        )

        if mode == ListMode.UNRESTRICTED:
            return AccessDecision(allowed=True, mode=mode)

        direct = [
            r for r in active
            if isinstance(r.target, DeviceTarget) and r.target.device_id == device_id
        ]
        if direct:
            if len(direct) > 1:
                self.logger.warning(
                    "Duplicate direct restrictions for device",
                    device_id=device_id,
                    restriction_ids=[r.restriction_id for r in direct]
                )
            return self._matched(direct[0], device_id, mode, "restriction")

        for restriction in active:
            if not isinstance(restriction.target, TagTarget):
                continue
            members = tag_members.get(restriction.target.tag_id, ())
            if device_id in members:
                return self._matched(restriction, device_id, mode, f"tag {restriction.target.tag_id} via restriction")

        if mode == ListMode.ALLOW_LIST:
            return AccessDecision(
                allowed=False,
                mode=mode,
                reason=f"Device {device_id} is not in the technician's allowed devices"
            )

        return AccessDecision(allowed=True, mode=mode)

    def _matched(self, restriction: Restriction, device_id: int,
                 mode: ListMode, via: str) -> AccessDecision:
        allowed = restriction.is_allow
        self.logger.debug(
            "Restriction matched",
            device_id=device_id,
            restriction_id=restriction.restriction_id,
            access_type=restriction.access_type.name,
            allowed=allowed
        )
        reason = None
        if not allowed:
            reason = restriction.reason or f"Device {device_id} is denied by {via} {restriction.restriction_id}"
        return AccessDecision(
            allowed=allowed,
            mode=mode,
            matched_restriction_id=restriction.restriction_id,
            reason=reason
        )
