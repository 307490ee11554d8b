"""HomeBid integration clients.

``StripeClient`` talks to the real API when a live key is configured and
returns deterministic mock results otherwise.
"""

from homebid.integrations.base import BaseIntegration, PaymentGateway
from homebid.integrations.stripe_client import StripeClient

__all__ = [
    "BaseIntegration",
    "PaymentGateway",
    "StripeClient",
]
