"""
                        Services Module

Order lifecycle services plus the external collaborators they drive.
Collaborators have Mock (development) and Real (production) implementations.

Services:
    - order_store: Versioned order persistence (compare-and-write)
    - state_machine: Legal status edges and claim windows
    - transition_engine: Guarded, atomic status transitions
    - claim_manager: Kitchen/service claim locks
    - effects: Notifications and payment sync after commit
    - payment: Stripe settlement checks and refunds
    - notifications: Twilio SMS / SendGrid email delivery
"""

from orderflow.services.claim_manager import ClaimManager
from orderflow.services.order_store import OrderStore
from orderflow.services.transition_engine import TransitionEngine

__all__ = ["ClaimManager", "OrderStore", "TransitionEngine"]
