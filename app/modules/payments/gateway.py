"""Payment gateway adapter (Stripe Checkout)."""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any, Protocol

import stripe
from fastapi import Request
from fastapi.concurrency import run_in_threadpool

from app.core.config import Settings
from app.core.enums import PaymentOutcomeEnum
from app.modules.payments.schemas import PaymentOutcomeEvent
from app.shared.exceptions import PaymentGatewayException

logger = logging.getLogger(__name__)

PAYMENT_INTENT_PREFIX = "pi_"
CHECKOUT_SOURCE = "checkout_session"


@dataclass(slots=True)
class GatewayCheckout:
    purchase_reference: str
    checkout_url: str | None


@dataclass(slots=True)
class GatewayPaymentStatus:
    """Gateway view of one purchase attempt; ``outcome`` is None while unsettled."""

    purchase_reference: str
    outcome: PaymentOutcomeEnum | None
    payer_id: str | None
    course_id: str | None
    amount_minor_units: int
    currency: str
    item_description: str

    def to_event(
        self,
        *,
        payer_id: str | None = None,
        course_id: str | None = None,
    ) -> PaymentOutcomeEvent:
        """Build the outcome event.

        Identifiers passed in (the ledger's or the caller's) take precedence
        over checkout metadata, which only fills the gaps.
        """
        if self.outcome is None:
            raise ValueError(f"Payment {self.purchase_reference} has no outcome yet")
        return PaymentOutcomeEvent(
            purchase_reference=self.purchase_reference,
            payer_id=payer_id or self.payer_id,
            course_id=course_id or self.course_id,
            outcome=self.outcome,
            amount_minor_units=self.amount_minor_units,
            currency=self.currency,
            item_description=self.item_description,
        )


class PaymentGateway(Protocol):
    """Operations the payments module needs from a gateway."""

    async def create_checkout(
        self,
        *,
        payer_id: str,
        course_id: str,
        title: str,
        amount_minor_units: int,
        currency: str,
    ) -> GatewayCheckout:
        """Open a hosted checkout for one course."""

    async def retrieve_payment_status(self, purchase_reference: str) -> GatewayPaymentStatus:
        """Query the current status of a checkout or payment intent."""

    async def refund(self, purchase_reference: str, reason: str | None) -> str | None:
        """Refund the captured payment; returns gateway refund id."""


def _metadata(obj: Mapping[str, Any]) -> Mapping[str, Any]:
    return obj.get("metadata") or {}


def status_from_checkout_session(session: Mapping[str, Any]) -> GatewayPaymentStatus:
    """Translate a Stripe checkout session into a gateway status."""
    payment_status = session.get("payment_status")
    if payment_status in ("paid", "no_payment_required"):
        outcome: PaymentOutcomeEnum | None = PaymentOutcomeEnum.SUCCEEDED
    elif session.get("status") == "expired":
        outcome = PaymentOutcomeEnum.CANCELED
    else:
        outcome = None

    metadata = _metadata(session)
    return GatewayPaymentStatus(
        purchase_reference=str(session.get("id") or ""),
        outcome=outcome,
        payer_id=metadata.get("payer_id") or session.get("client_reference_id"),
        course_id=metadata.get("course_id"),
        amount_minor_units=int(session.get("amount_total") or 0),
        currency=str(session.get("currency") or "usd"),
        item_description=str(metadata.get("item_description") or ""),
    )


def status_from_payment_intent(intent: Mapping[str, Any]) -> GatewayPaymentStatus:
    """Translate a Stripe payment intent into a gateway status."""
    status = intent.get("status")
    if status == "succeeded":
        outcome: PaymentOutcomeEnum | None = PaymentOutcomeEnum.SUCCEEDED
    elif status == "canceled":
        outcome = PaymentOutcomeEnum.CANCELED
    elif status == "requires_payment_method" and intent.get("last_payment_error"):
        outcome = PaymentOutcomeEnum.FAILED
    else:
        outcome = None

    metadata = _metadata(intent)
    return GatewayPaymentStatus(
        purchase_reference=str(intent.get("id") or ""),
        outcome=outcome,
        payer_id=metadata.get("payer_id"),
        course_id=metadata.get("course_id"),
        amount_minor_units=int(intent.get("amount") or 0),
        currency=str(intent.get("currency") or "usd"),
        item_description=str(metadata.get("item_description") or intent.get("description") or ""),
    )


class StripeCheckoutGateway:
    """Stripe Checkout backed gateway.

    The SDK client is blocking, so calls run in the threadpool.
    """

    def __init__(
        self,
        api_key: str | None,
        *,
        success_url: str,
        cancel_url: str,
    ) -> None:
        self.client = stripe.StripeClient(api_key) if api_key else None
        self.success_url = success_url
        self.cancel_url = cancel_url

    @classmethod
    def from_settings(cls, settings: Settings) -> "StripeCheckoutGateway":
        return cls(
            settings.stripe_secret_key,
            success_url=settings.checkout_success_url,
            cancel_url=settings.checkout_cancel_url,
        )

    async def create_checkout(
        self,
        *,
        payer_id: str,
        course_id: str,
        title: str,
        amount_minor_units: int,
        currency: str,
    ) -> GatewayCheckout:
        client = self._require_client()
        metadata = {
            "payer_id": payer_id,
            "course_id": course_id,
            "item_description": f"{title} ({course_id})",
        }
        params = {
            "mode": "payment",
            "payment_method_types": ["card"],
            "line_items": [
                {
                    "price_data": {
                        "currency": currency.lower(),
                        "unit_amount": amount_minor_units,
                        "product_data": {"name": title},
                    },
                    "quantity": 1,
                },
            ],
            "success_url": self.success_url,
            "cancel_url": self.cancel_url,
            "client_reference_id": payer_id,
            "metadata": metadata,
            "payment_intent_data": {"metadata": {**metadata, "source": CHECKOUT_SOURCE}},
        }
        session = await self._call(client.checkout.sessions.create, params=params)
        logger.info("Checkout session %s created for payer %s course %s", session.id, payer_id, course_id)
        return GatewayCheckout(purchase_reference=session.id, checkout_url=session.get("url"))

    async def retrieve_payment_status(self, purchase_reference: str) -> GatewayPaymentStatus:
        client = self._require_client()
        if purchase_reference.startswith(PAYMENT_INTENT_PREFIX):
            intent = await self._call(client.payment_intents.retrieve, purchase_reference)
            return status_from_payment_intent(intent)
        session = await self._call(client.checkout.sessions.retrieve, purchase_reference)
        return status_from_checkout_session(session)

    async def refund(self, purchase_reference: str, reason: str | None) -> str | None:
        client = self._require_client()
        payment_intent_id: str | None = purchase_reference
        if not purchase_reference.startswith(PAYMENT_INTENT_PREFIX):
            session = await self._call(client.checkout.sessions.retrieve, purchase_reference)
            intent = session.get("payment_intent")
            payment_intent_id = intent if isinstance(intent, str) or intent is None else intent.get("id")
        if not payment_intent_id:
            raise PaymentGatewayException(f"No captured payment found for {purchase_reference}")

        refund = await self._call(
            client.refunds.create,
            params={
                "payment_intent": payment_intent_id,
                "reason": "requested_by_customer",
                "metadata": {
                    "admin_reason": reason or "Admin refund",
                    "purchase_reference": purchase_reference,
                },
            },
        )
        return refund.get("id")

    def _require_client(self) -> stripe.StripeClient:
        if self.client is None:
            raise PaymentGatewayException("Payment gateway is not configured")
        return self.client

    @staticmethod
    async def _call(func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        try:
            return await run_in_threadpool(func, *args, **kwargs)
        except stripe.StripeError as exc:
            logger.warning("Stripe call %s failed: %s", getattr(func, "__name__", func), exc)
            raise PaymentGatewayException("Payment gateway request failed") from exc


def get_payment_gateway(request: Request) -> PaymentGateway:
    """FastAPI dependency returning the application payment gateway."""
    return request.app.state.payment_gateway
