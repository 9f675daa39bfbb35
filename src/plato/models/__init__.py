from plato.db.database import Base

# Import all models so create_all can discover them
from .client_state_slot import ClientStateSlot
from .invitation import Invitation, InvitationStatus, AcceptanceReceipt
from .session import AuthSession
