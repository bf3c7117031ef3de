"""Payment provider boundary.

The checkout code only needs two calls from a provider: create an intent for
an amount, and read an intent's status back. ``StripeGateway`` implements
them on the Stripe SDK; tests plug in their own object with the same shape.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Optional, Protocol

import stripe

from training_market.errors import ServiceError
from training_market.settings import Settings, settings as default_settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PaymentIntent:
    id: str
    status: str
    amount: float
    client_secret: Optional[str] = None


class PaymentGateway(Protocol):
    def create_intent(self, amount: float, metadata: Dict[str, str]) -> PaymentIntent:
        ...

    def get_intent_status(self, intent_id: str) -> str:
        ...


class PaymentError(ServiceError):
    code = "payment_error"
    status_code = 402


class PaymentProviderError(PaymentError):
    code = "payment_provider_error"
    status_code = 502
    retryable = True


class PaymentVerificationError(PaymentError):
    pass


class PaymentDeclinedError(PaymentVerificationError):
    code = "payment_declined"


class PaymentRequiresActionError(PaymentVerificationError):
    code = "payment_requires_action"
    status_code = 409


class PaymentProcessingError(PaymentVerificationError):
    code = "payment_processing"
    status_code = 409
    retryable = True


class PaymentCanceledError(PaymentVerificationError):
    code = "payment_canceled"


class PaymentStatusUnknownError(PaymentVerificationError):
    code = "payment_status_unknown"
    status_code = 502
    retryable = True


def to_cents(amount: float) -> int:
    return int(round(amount * 100))


def verify_intent_status(status: str) -> None:
    """Return when ``status`` means the money moved; raise otherwise."""
    if status == "succeeded":
        return
    if status == "requires_payment_method":
        raise PaymentDeclinedError("Payment was declined. Please try a different card.")
    if status in ("requires_action", "requires_confirmation"):
        raise PaymentRequiresActionError("Payment requires additional authentication.")
    if status == "processing":
        raise PaymentProcessingError("Payment is still processing. Please wait.")
    if status == "canceled":
        raise PaymentCanceledError("Payment was canceled.")
    raise PaymentStatusUnknownError(f"Payment status: {status}")


class StripeGateway:
    def __init__(self, config: Settings = default_settings):
        self.api_key = config.stripe_secret_key
        self.currency = config.currency

    def create_intent(self, amount: float, metadata: Dict[str, str]) -> PaymentIntent:
        if not self.api_key:
            raise PaymentProviderError("Payment system not configured")
        try:
            intent = stripe.PaymentIntent.create(
                amount=to_cents(amount),
                currency=self.currency,
                metadata=metadata,
                automatic_payment_methods={"enabled": True},
                api_key=self.api_key,
            )
        except stripe.StripeError as exc:
            logger.error("stripe intent creation failed: %s", exc)
            raise PaymentProviderError(str(getattr(exc, "user_message", None) or exc))
        return PaymentIntent(
            id=intent.id,
            status=intent.status,
            amount=amount,
            client_secret=intent.client_secret,
        )

    def get_intent_status(self, intent_id: str) -> str:
        if not self.api_key:
            raise PaymentProviderError("Payment system not configured")
        try:
            intent = stripe.PaymentIntent.retrieve(intent_id, api_key=self.api_key)
        except stripe.StripeError as exc:
            logger.error("stripe intent %s lookup failed: %s", intent_id, exc)
            raise PaymentProviderError("Could not verify payment")
        return intent.status


def construct_webhook_event(
    payload: bytes, signature: Optional[str], config: Settings = default_settings
) -> dict:
    if not config.stripe_webhook_secret:
        raise PaymentError("Webhook secret not configured", code="webhook_not_configured")
    try:
        event = stripe.Webhook.construct_event(payload, signature or "", config.stripe_webhook_secret)
    except ValueError:
        raise PaymentError("Invalid payload", code="invalid_webhook")
    except stripe.SignatureVerificationError:
        raise PaymentError("Invalid signature", code="invalid_webhook")
    return event.to_dict()
