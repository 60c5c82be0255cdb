"""Stripe webhook authentication and event translation."""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from typing import Any

import stripe

from app.core.enums import PaymentOutcomeEnum
from app.modules.payments.gateway import (
    CHECKOUT_SOURCE,
    status_from_checkout_session,
    status_from_payment_intent,
)
from app.modules.payments.schemas import PaymentOutcomeEvent
from app.shared.exceptions import AppException, InvalidSignatureException, ServiceUnavailableException

logger = logging.getLogger(__name__)

CHECKOUT_SESSION_EVENTS: dict[str, PaymentOutcomeEnum | None] = {
    # None: use the session's own payment status.
    "checkout.session.completed": None,
    "checkout.session.async_payment_succeeded": PaymentOutcomeEnum.SUCCEEDED,
    "checkout.session.async_payment_failed": PaymentOutcomeEnum.FAILED,
    "checkout.session.expired": PaymentOutcomeEnum.CANCELED,
}

PAYMENT_INTENT_EVENTS: dict[str, PaymentOutcomeEnum] = {
    "payment_intent.succeeded": PaymentOutcomeEnum.SUCCEEDED,
    "payment_intent.payment_failed": PaymentOutcomeEnum.FAILED,
    "payment_intent.canceled": PaymentOutcomeEnum.CANCELED,
}


def verify_webhook_signature(
    payload: bytes,
    signature_header: str | None,
    secret: str | None,
    tolerance_seconds: int,
) -> dict[str, Any]:
    """Authenticate a webhook body and return the decoded event."""
    if not secret:
        logger.error("Stripe webhook secret is not configured")
        raise ServiceUnavailableException("Webhook is not configured")
    if not signature_header:
        raise InvalidSignatureException("Missing Stripe-Signature header")

    try:
        body = payload.decode("utf-8")
        stripe.WebhookSignature.verify_header(body, signature_header, secret, tolerance_seconds)
    except (UnicodeDecodeError, stripe.SignatureVerificationError) as exc:
        logger.warning("Webhook signature verification failed: %s", exc)
        raise InvalidSignatureException("Invalid webhook signature") from exc

    try:
        event = json.loads(body)
    except ValueError as exc:
        raise AppException("Webhook payload is not valid JSON") from exc
    if not isinstance(event, dict):
        raise AppException("Webhook payload must be a JSON object")
    return event


def event_from_webhook(payload: Mapping[str, Any]) -> PaymentOutcomeEvent | None:
    """Translate a gateway webhook into an outcome event, or None if not relevant."""
    event_type = str(payload.get("type") or "")
    obj = (payload.get("data") or {}).get("object") or {}

    if event_type in CHECKOUT_SESSION_EVENTS:
        status = status_from_checkout_session(obj)
        forced_outcome = CHECKOUT_SESSION_EVENTS[event_type]
        if forced_outcome is not None:
            status.outcome = forced_outcome
    elif event_type in PAYMENT_INTENT_EVENTS:
        # Intents opened by a checkout session settle through checkout.session.* events.
        if ((obj.get("metadata") or {}).get("source")) == CHECKOUT_SOURCE:
            return None
        status = status_from_payment_intent(obj)
        status.outcome = PAYMENT_INTENT_EVENTS[event_type]
    else:
        return None

    if status.outcome is None:
        logger.info("Webhook %s for %s carries no settled outcome yet", event_type, status.purchase_reference)
        return None
    return status.to_event()
