from abc import ABC, abstractmethod
from decimal import Decimal

from homebid.common.logging import get_logger


class BaseIntegration(ABC):
    """Base class for all external service integrations.

    Provides common logging and a required health_check interface so the
    application can verify connectivity at startup or on-demand.
    """

    def __init__(self, name: str):
        self.name = name
        self.logger = get_logger(f"integrations.{name}")

    @abstractmethod
    async def health_check(self) -> bool:
        """Return True when the integration is reachable and functional."""
        ...


class PaymentGateway(BaseIntegration):
    """Money movement used by the escrow ledger.

    Every call carries an idempotency key; replaying a key must return the
    original result instead of moving money twice. Failures raise
    ``ExternalServiceError``.
    """

    @abstractmethod
    async def charge(self, amount: Decimal, customer_ref: str | None, idempotency_key: str) -> str:
        """Charge the homeowner. Returns the charge id."""
        ...

    @abstractmethod
    async def refund(self, charge_id: str, amount: Decimal, idempotency_key: str) -> str:
        """Refund part or all of a prior charge. Returns the refund id."""
        ...

    @abstractmethod
    async def transfer(self, amount: Decimal, destination_ref: str | None, idempotency_key: str) -> str:
        """Pay out to a contractor account. Returns the transfer id."""
        ...
