"""
ClientStateSlot model - a named, durable key/value slot for client-local state.

Holds small JSON blobs that must survive a navigation round-trip (for
example the pending invitation stashed before a login redirect).
"""
from sqlalchemy import Column, String, Text, DateTime
from sqlalchemy.sql import func

from plato.db.database import Base


class ClientStateSlot(Base):
    """
    One named slot of client-local state.

    The value is stored as raw text and parsed by the owning store, so a
    corrupted value never breaks loading the row itself.
    """
    __tablename__ = "client_state_slots"

    key = Column(String(255), primary_key=True)
    value = Column(Text, nullable=False)

    updated_at = Column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
        comment="UTC timestamp when the slot was last written"
    )

    def __repr__(self):
        return f"<ClientStateSlot(key={self.key})>"
