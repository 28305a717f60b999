"""
Billing-event collaborator interface.
"""

from .events import (
    SubscriptionChangeReason, SubscriptionChangeResult, SubscriptionEventHandler, TierTransition,
)

__all__ = [
    "SubscriptionChangeReason", "SubscriptionChangeResult", "SubscriptionEventHandler", "TierTransition",
]
