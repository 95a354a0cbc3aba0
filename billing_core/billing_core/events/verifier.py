"""Authenticate a raw webhook request and decode it into a typed event.

Signature checking is delegated to the processor SDK.  Authentication
failures are fatal; an authenticated event of a kind outside
:data:`HANDLED_EVENT_TYPES` is reported with :class:`UnhandledEventKind`
so the caller can acknowledge it.
"""

from __future__ import annotations

import json
import logging

import stripe
from pydantic import ValidationError

from billing_core.errors import InvalidSignature, MalformedPayload, UnhandledEventKind
from billing_core.events.models import (
    HANDLED_EVENT_TYPES,
    BillingEvent,
    EventEnvelope,
    billing_event_adapter,
)

logger = logging.getLogger(__name__)

DEFAULT_TOLERANCE_SECONDS = 300


def verify_and_classify(
    payload: bytes,
    signature_header: str | None,
    secret: str,
    tolerance: int = DEFAULT_TOLERANCE_SECONDS,
) -> BillingEvent:
    """Verify *payload* against *signature_header* and decode it.

    Parameters
    ----------
    payload:
        The raw request body, byte-for-byte as received.
    signature_header:
        Value of the ``stripe-signature`` header.
    secret:
        The endpoint's webhook signing secret.
    tolerance:
        Maximum age of the signed timestamp, in seconds.

    Returns
    -------
    BillingEvent
        One of the handled event variants.

    Raises
    ------
    InvalidSignature
        The header is missing or the signature does not match.
    MalformedPayload
        The payload is authentic but cannot be decoded.
    UnhandledEventKind
        The payload is authentic but its kind is not handled.
    """
    if not signature_header:
        raise InvalidSignature("Missing signature header")
    if not secret:
        raise InvalidSignature("Webhook signing secret is not configured")

    try:
        stripe.Webhook.construct_event(
            payload=payload,
            sig_header=signature_header,
            secret=secret,
            tolerance=tolerance,
        )
    except stripe.SignatureVerificationError as exc:
        raise InvalidSignature(str(exc)) from exc
    except ValueError as exc:
        # construct_event only parses the body after the signature matched.
        raise MalformedPayload(f"Payload is not valid JSON: {exc}") from exc

    return classify_payload(payload)


def classify_payload(payload: bytes) -> BillingEvent:
    """Decode an already-authenticated payload into a handled event variant."""
    try:
        raw = json.loads(payload)
    except ValueError as exc:
        raise MalformedPayload(f"Payload is not valid JSON: {exc}") from exc

    try:
        envelope = EventEnvelope.model_validate(raw)
    except ValidationError as exc:
        raise MalformedPayload(f"Payload is not an event: {exc.error_count()} validation error(s)") from exc

    if envelope.type not in HANDLED_EVENT_TYPES:
        raise UnhandledEventKind(envelope.type, envelope.id)

    try:
        return billing_event_adapter.validate_python(raw)
    except ValidationError as exc:
        logger.warning("Event %s (%s) failed validation: %s", envelope.id, envelope.type, exc)
        raise MalformedPayload(
            f"Event {envelope.id} of type {envelope.type} is malformed: {exc.error_count()} validation error(s)"
        ) from exc
