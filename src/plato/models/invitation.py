"""
Invitation snapshot - what an invitation token resolves to.

A resolved invitation is immutable; only its status can move forward
(pending -> accepted | expired | revoked), and only by producing a new
snapshot.
"""
from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


class InvitationStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    EXPIRED = "expired"
    REVOKED = "revoked"


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Parse an ISO-8601 string or epoch-milliseconds number into an aware datetime.

    Naive values are taken to be UTC. Returns None for empty input.

    Raises:
        ValueError: If the value is not a representable timestamp
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)):
        try:
            parsed = datetime.fromtimestamp(value / 1000, tz=timezone.utc)
        except (OverflowError, OSError) as e:
            raise ValueError(f"Timestamp out of range: {value}") from e
    else:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(frozen=True)
class Invitation:
    """
    Invitation to join an organization with a given role.

    Returned by the token resolver; `organization_name` and `role` are
    meant for display.
    """
    token: str
    organization_id: str
    organization_name: str
    role: str
    expires_at: Optional[datetime]
    status: InvitationStatus = InvitationStatus.PENDING

    @property
    def is_expired(self) -> bool:
        """Check if invitation has expired."""
        if self.expires_at is None:
            return False
        return datetime.now(timezone.utc) > self.expires_at

    @property
    def is_usable(self) -> bool:
        return self.status == InvitationStatus.PENDING and not self.is_expired

    def with_status(self, status: InvitationStatus) -> "Invitation":
        """
        Return a copy with a new status.

        Raises:
            ValueError: If the invitation already left the pending state
        """
        status = InvitationStatus(status)
        if status == self.status:
            return self
        if self.status != InvitationStatus.PENDING:
            raise ValueError(
                f"Invitation already {self.status.value}, cannot become {status.value}"
            )
        return replace(self, status=status)

    @classmethod
    def from_payload(cls, payload: dict, token: str) -> "Invitation":
        """
        Build an invitation from the backend's JSON.

        Accepts both `{"invitation": {...}}` and a flat invitation object.

        Raises:
            ValueError: If the payload is not an invitation
        """
        if not isinstance(payload, dict):
            raise ValueError("Invitation payload must be an object")

        data = payload.get("invitation", payload)
        if not isinstance(data, dict):
            raise ValueError("Invitation payload must be an object")

        organization = data.get("organization")
        if not isinstance(organization, dict):
            organization = {}
        organization_id = data.get("organizationId") or organization.get("id")
        if organization_id is None:
            raise ValueError("Invitation payload has no organization")

        organization_name = (
            organization.get("companyName")
            or data.get("organizationName")
            or "the organization"
        )

        role = data.get("role")
        if not role:
            raise ValueError("Invitation payload has no role")

        return cls(
            token=data.get("token") or token,
            organization_id=str(organization_id),
            organization_name=organization_name,
            role=role,
            expires_at=parse_timestamp(data.get("expiresAt")),
            status=InvitationStatus(data.get("status", InvitationStatus.PENDING.value)),
        )

    def __repr__(self):
        return (
            f"<Invitation(organization={self.organization_id}, role={self.role}, "
            f"status={self.status.value})>"
        )


@dataclass(frozen=True)
class AcceptanceReceipt:
    """Result of a successful (or already-done) acceptance."""
    message: str
    organization_id: Optional[str] = None
    organization_name: Optional[str] = None
    role: Optional[str] = None
    new_member: bool = True
    already_member: bool = False

    @classmethod
    def from_payload(cls, payload: dict) -> "AcceptanceReceipt":
        organization = payload.get("organization")
        if not isinstance(organization, dict):
            organization = {}
        organization_id = organization.get("id", payload.get("organizationId"))
        return cls(
            message=payload.get("message") or "Successfully joined the team!",
            organization_id=str(organization_id) if organization_id is not None else None,
            organization_name=organization.get("companyName"),
            role=payload.get("role"),
            new_member=bool(payload.get("newMember", True)),
        )
