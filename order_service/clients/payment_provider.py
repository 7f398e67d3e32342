"""
Payment provider client.

``PaymentProvider`` is the contract the payment gateway depends on;
``StripePaymentProvider`` implements it with the Stripe SDK. Tests supply
their own implementation.
"""
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, Optional

import stripe

from .. import config
from ..errors import PaymentProviderError, ValidationFailed

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PaymentIntent:
    """A provider payment intent, reduced to what reconciliation needs."""
    intent_id: str
    status: str
    charge_id: Optional[str] = None
    client_secret: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Refund:
    refund_id: str
    status: str
    charge_id: str


def to_cents(amount: Decimal) -> int:
    return int((Decimal(str(amount)) * 100).to_integral_value())


class PaymentProvider(ABC):
    """Abstract payment provider interface."""

    @abstractmethod
    def create_payment_intent(
        self,
        amount: Decimal,
        currency: str,
        metadata: Dict[str, Any],
        description: Optional[str] = None,
        receipt_email: Optional[str] = None,
    ) -> PaymentIntent:
        """Start a payment for an order."""

    @abstractmethod
    def retrieve_payment_intent(self, intent_id: str) -> PaymentIntent:
        """Fetch the current state of a payment intent."""

    @abstractmethod
    def refund(self, charge_id: str, idempotency_key: str, reason: Optional[str] = None,
               metadata: Optional[Dict[str, Any]] = None) -> Refund:
        """Refund a captured charge in full."""

    @abstractmethod
    def construct_event(self, payload: bytes, signature: str) -> Dict[str, Any]:
        """Verify a webhook signature and return the event as a dict."""


class StripePaymentProvider(PaymentProvider):
    """
    Stripe implementation of ``PaymentProvider``.

    Args:
        api_key: Stripe secret key (defaults to ``STRIPE_SECRET_KEY``)
        webhook_secret: Endpoint signing secret (defaults to ``STRIPE_WEBHOOK_SECRET``)
    """

    def __init__(self, api_key: Optional[str] = None, webhook_secret: Optional[str] = None):
        self.api_key = api_key or config.STRIPE_SECRET_KEY
        self.webhook_secret = webhook_secret or config.STRIPE_WEBHOOK_SECRET

    @staticmethod
    def _intent(intent) -> PaymentIntent:
        charge = intent.latest_charge
        if charge is not None and not isinstance(charge, str):
            charge = charge.id
        metadata = intent.metadata
        return PaymentIntent(
            intent_id=intent.id,
            status=intent.status,
            charge_id=charge,
            client_secret=intent.client_secret,
            metadata=dict(metadata.to_dict() if hasattr(metadata, "to_dict") else (metadata or {})),
        )

    def create_payment_intent(self, amount, currency, metadata, description=None, receipt_email=None):
        try:
            intent = stripe.PaymentIntent.create(
                api_key=self.api_key,
                amount=to_cents(amount),
                currency=currency.lower(),
                metadata=metadata,
                description=description,
                receipt_email=receipt_email,
                idempotency_key=f"intent-{metadata.get('order_id')}",
            )
        except stripe.StripeError as e:
            logger.error(f"Payment intent creation failed: {e}")
            raise PaymentProviderError(f"Payment intent creation failed: {e.user_message or e}")
        return self._intent(intent)

    def retrieve_payment_intent(self, intent_id):
        try:
            intent = stripe.PaymentIntent.retrieve(intent_id, api_key=self.api_key)
        except stripe.StripeError as e:
            logger.error(f"Payment intent {intent_id} lookup failed: {e}")
            raise PaymentProviderError(f"Payment confirmation failed: {e.user_message or e}")
        return self._intent(intent)

    def refund(self, charge_id, idempotency_key, reason=None, metadata=None):
        try:
            refund = stripe.Refund.create(
                api_key=self.api_key,
                charge=charge_id,
                reason=reason or "requested_by_customer",
                metadata=metadata or {},
                idempotency_key=idempotency_key,
            )
        except stripe.StripeError as e:
            logger.error(f"Refund of charge {charge_id} failed: {e}")
            raise PaymentProviderError(f"Refund processing failed: {e.user_message or e}")
        return Refund(refund_id=refund.id, status=refund.status, charge_id=charge_id)

    def construct_event(self, payload, signature):
        try:
            stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        except stripe.SignatureVerificationError as e:
            logger.warning(f"Webhook signature verification failed: {e}")
            raise ValidationFailed("Webhook signature verification failed")
        except ValueError as e:
            raise ValidationFailed(f"Invalid webhook payload: {e}")
        return json.loads(payload)
