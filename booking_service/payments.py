import asyncio
import logging
from decimal import Decimal
from typing import Any, Dict, NamedTuple

import stripe

from .errors import ProviderError
from .pricing import to_minor_units

logger = logging.getLogger("payments")

PROVIDER_NAME = "Stripe"


class Transaction(NamedTuple):
    id: str
    amount: Decimal


class StripePaymentGateway:
    """
    Charge/capture operations against Stripe.
    The SDK is blocking, so every call runs in a worker thread.
    """

    def __init__(self, api_key: str, currency: str = "gbp"):
        self.api_key = api_key
        self.currency = currency

    async def _call(self, func, *args, **kwargs):
        try:
            return await asyncio.to_thread(func, *args, api_key=self.api_key, **kwargs)
        except stripe.StripeError as e:
            message = getattr(e, "user_message", None) or str(e)
            logger.error(f"Stripe request failed: {message}")
            raise ProviderError(message) from e

    async def create_token(self, card: Dict[str, Any]) -> str:
        """Card token; used by tests and tooling, clients tokenize on their side."""
        token = await self._call(stripe.Token.create, card=card)
        return token["id"]

    async def create_transaction(self, amount: Decimal, currency: str, source: str) -> Transaction:
        """Authorize amount (major units) on the card source; capture comes later."""
        charge = await self._call(
            stripe.Charge.create,
            amount=to_minor_units(amount),
            currency=(currency or self.currency).lower(),
            source=source,
            capture=False,
        )
        logger.info(f"Created Stripe charge {charge['id']} for {amount} {currency}")
        return Transaction(id=charge["id"], amount=Decimal(charge["amount"]) / 100)

    async def capture_transaction(self, transaction_id: str) -> None:
        await self._call(stripe.Charge.capture, transaction_id)
        logger.info(f"Captured Stripe charge {transaction_id}")

    async def create_customer(self, email: str) -> str:
        customer = await self._call(stripe.Customer.create, email=email)
        return customer["id"]
