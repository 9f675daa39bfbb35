"""
Pending-invitation store.

A single durable slot that remembers which invitation the user was accepting
while they leave for the login page. Records older than the TTL are treated
as absent and purged on read; abandoned slots of other clients are purged
when a new invitation is stashed and at startup.
"""
from __future__ import annotations

import json
import logging
import os
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from plato.metrics import pending_invitations_purged_total
from plato.models.client_state_slot import ClientStateSlot

logger = logging.getLogger(__name__)

DEFAULT_SLOT = "pendingInvitation"
DEFAULT_TTL_MS = 60 * 60 * 1000


def _now_ms() -> int:
    return int(time.time() * 1000)


def _as_datetime(epoch_ms: int) -> datetime:
    return datetime.fromtimestamp(epoch_ms / 1000, tz=timezone.utc)


@dataclass(frozen=True)
class PendingInvitationRecord:
    """Invitation parameters stashed across a login redirect."""
    token: str
    organization_id: Optional[str]
    role: Optional[str]
    stored_at: int  # epoch milliseconds

    def to_json(self) -> str:
        return json.dumps({
            "token": self.token,
            "organizationId": self.organization_id,
            "role": self.role,
            "timestamp": self.stored_at,
        })

    @classmethod
    def from_json(cls, raw: str) -> "PendingInvitationRecord":
        """
        Parse a stored record.

        Raises:
            ValueError: If the stored text is not a valid record
        """
        data = json.loads(raw)
        if not isinstance(data, dict):
            raise ValueError("Pending invitation must be an object")

        token = data.get("token")
        timestamp = data.get("timestamp")
        if not isinstance(token, str) or not token:
            raise ValueError("Pending invitation has no token")
        if isinstance(timestamp, bool) or not isinstance(timestamp, (int, float)):
            raise ValueError("Pending invitation has no timestamp")

        organization_id = data.get("organizationId")
        return cls(
            token=token,
            organization_id=str(organization_id) if organization_id is not None else None,
            role=data.get("role"),
            stored_at=int(timestamp),
        )


class PendingInvitationStore:
    """Single-slot store for the in-flight invitation."""

    def __init__(
        self,
        db: Session,
        slot: str = DEFAULT_SLOT,
        ttl_ms: Optional[int] = None,
        clock: Callable[[], int] = _now_ms,
    ):
        self.db = db
        self.slot = slot
        if ttl_ms is None:
            ttl_ms = int(float(os.getenv("PENDING_INVITATION_TTL_SECONDS", "3600")) * 1000)
        self.ttl_ms = ttl_ms
        self.clock = clock

    @property
    def namespace(self) -> str:
        """Slot family shared by every client ("pendingInvitation")."""
        return self.slot.split(":", 1)[0]

    def stash(self, token: str, organization_id: Optional[str], role: Optional[str]) -> PendingInvitationRecord:
        """
        Stamp an invitation with the current time and put it in the slot.

        Expired slots of other clients in the same family are purged first.
        """
        self.purge_expired()
        record = PendingInvitationRecord(
            token=token,
            organization_id=organization_id,
            role=role,
            stored_at=self.clock(),
        )
        self.put(record)
        return record

    def put(self, record: PendingInvitationRecord) -> None:
        """Store a record, replacing whatever was in the slot."""
        written_at = _as_datetime(self.clock())
        row = self.db.get(ClientStateSlot, self.slot)
        if row is None:
            row = ClientStateSlot(key=self.slot, value=record.to_json(), updated_at=written_at)
            self.db.add(row)
        else:
            row.value = record.to_json()
            row.updated_at = written_at
        self.db.commit()

        logger.info(f"Stored pending invitation in slot {self.slot}")

    def get(self) -> Optional[PendingInvitationRecord]:
        """
        Return the stashed invitation, or None.

        Expired or unreadable records are cleared before returning None.
        """
        row = self.db.get(ClientStateSlot, self.slot)
        if row is None:
            return None

        try:
            record = PendingInvitationRecord.from_json(row.value)
        except (ValueError, TypeError) as e:
            logger.warning(f"Discarding unreadable pending invitation in slot {self.slot}: {e}")
            pending_invitations_purged_total.labels(reason="corrupt").inc()
            self.clear()
            return None

        if self.clock() - record.stored_at > self.ttl_ms:
            logger.info(f"Pending invitation in slot {self.slot} expired")
            pending_invitations_purged_total.labels(reason="expired").inc()
            self.clear()
            return None

        return record

    def purge_expired(self) -> int:
        """
        Delete slots in this family last written more than the TTL ago.

        Clients that never return would otherwise leave their slot behind.

        Returns:
            Number of slots deleted
        """
        cutoff = _as_datetime(self.clock() - self.ttl_ms)
        deleted = self.db.query(ClientStateSlot).filter(
            or_(
                ClientStateSlot.key == self.namespace,
                ClientStateSlot.key.startswith(f"{self.namespace}:", autoescape=True),
            ),
            ClientStateSlot.updated_at < cutoff,
        ).delete(synchronize_session="fetch")
        self.db.commit()

        if deleted:
            logger.info(f"Purged {deleted} expired pending invitations")
            pending_invitations_purged_total.labels(reason="abandoned").inc(deleted)
        return deleted

    def clear(self) -> None:
        deleted = self.db.query(ClientStateSlot).filter(
            ClientStateSlot.key == self.slot
        ).delete()
        self.db.commit()
        if deleted:
            logger.debug(f"Cleared pending invitation slot {self.slot}")
