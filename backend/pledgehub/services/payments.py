"""
Payment providers for the convenience fee.

The simulated provider is the default and stands in for a real gateway.
The Stripe provider charges through PaymentIntents in test mode.
"""

import uuid
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, Optional

import stripe
from loguru import logger

from pledgehub.config import settings
from pledgehub.feature_flags import feature_flags
from pledgehub.utils.errors import ConfigurationError


@dataclass
class PaymentOutcome:
    success: bool
    provider: str
    payment_ref: Optional[str] = None
    error_message: Optional[str] = None
    gateway_response: Dict[str, Any] = field(default_factory=dict)


class PaymentProvider:
    """Interface for convenience-fee charges."""

    name = "base"

    def charge(
        self,
        user_id: str,
        amount: Decimal,
        currency: str,
        description: str,
        payment_method: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
    ) -> PaymentOutcome:
        raise NotImplementedError


class SimulatedPaymentProvider(PaymentProvider):
    """
    Test payment stage.

    Succeeds unless the payment method is ``fail`` (or starts with
    ``fail:``, in which case the rest is the decline message).
    """

    name = "simulated"

    def charge(self, user_id, amount, currency, description, payment_method=None, metadata=None):
        method = payment_method or "card"
        if method == "fail" or method.startswith("fail:"):
            reason = method.split(":", 1)[1] if ":" in method else "Card declined"
            logger.info(f"Simulated payment declined for user {user_id}: {reason}")
            return PaymentOutcome(
                success=False,
                provider=self.name,
                error_message=reason,
                gateway_response={"status": "declined", "reason": reason},
            )
        payment_ref = f"sim_{uuid.uuid4().hex[:16]}"
        return PaymentOutcome(
            success=True,
            provider=self.name,
            payment_ref=payment_ref,
            gateway_response={"status": "succeeded", "amount": str(amount), "currency": currency},
        )


class StripePaymentProvider(PaymentProvider):
    """Charge the fee with a confirmed Stripe PaymentIntent."""

    name = "stripe"

    def __init__(self, api_key: str):
        if not api_key:
            raise ConfigurationError("STRIPE_API_KEY is required for the stripe payment provider")
        stripe.api_key = api_key

    def charge(self, user_id, amount, currency, description, payment_method=None, metadata=None):
        # Stripe amounts are in the currency's smallest unit
        minor_units = int((amount * 100).to_integral_value())
        try:
            intent = stripe.PaymentIntent.create(
                amount=minor_units,
                currency=currency.lower(),
                description=description,
                payment_method=payment_method,
                confirm=True,
                automatic_payment_methods={"enabled": True, "allow_redirects": "never"},
                metadata={"user_id": user_id, **(metadata or {})},
            )
        except stripe.StripeError as e:
            logger.warning(f"Stripe charge failed for user {user_id}: {e.user_message or e}")
            return PaymentOutcome(
                success=False,
                provider=self.name,
                error_message=e.user_message or str(e),
                gateway_response={"code": getattr(e, "code", None)},
            )

        succeeded = intent.status == "succeeded"
        return PaymentOutcome(
            success=succeeded,
            provider=self.name,
            payment_ref=intent.id,
            error_message=None if succeeded else f"Payment {intent.status}",
            gateway_response={"id": intent.id, "status": intent.status},
        )


def get_payment_provider() -> PaymentProvider:
    """Provider selected by settings; PAYMENT_TEST_MODE forces the simulated one."""
    if feature_flags.PAYMENT_TEST_MODE or settings.payment_provider == "simulated":
        return SimulatedPaymentProvider()
    return StripePaymentProvider(settings.stripe_api_key)
