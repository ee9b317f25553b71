"""Payment-driven loyalty services."""

from .order_rewards import OrderRewardsService, order_earn_key, points_for_order
from .stripe_events import PaymentEventOutcome, StripeLoyaltyEventHandler

__all__ = [
    "OrderRewardsService",
    "PaymentEventOutcome",
    "StripeLoyaltyEventHandler",
    "order_earn_key",
    "points_for_order",
]
