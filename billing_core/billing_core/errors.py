"""Error taxonomy for the billing reconciliation pipeline.

Errors fall into three groups, and the webhook layer maps each group to a
different response:

* **Rejecting** -- :class:`InvalidSignature`, :class:`MalformedPayload`,
  :class:`MalformedLineItems`, :class:`UnknownPriceId`.  Processing of the
  event is aborted and nothing is written.
* **Acknowledged** -- :class:`UnhandledEventKind` and
  :class:`InvalidStatusTransition`.  The event is authentic but will never
  become processable, so the sender is told to stop retrying.
* **Retryable** -- :class:`UnknownAccount` (the customer has not been linked
  to a tenant yet) and :class:`MailDeliveryError`.
"""

from __future__ import annotations


class BillingError(Exception):
    """Base class for all billing pipeline errors."""

    code: str = "billing_error"


# ---------------------------------------------------------------------------
# Event verification
# ---------------------------------------------------------------------------


class InvalidSignature(BillingError):
    """The webhook signature header is missing or does not verify."""

    code = "invalid_signature"


class MalformedPayload(BillingError):
    """The webhook body is authentic but cannot be decoded."""

    code = "malformed_payload"


class UnhandledEventKind(BillingError):
    """An authenticated event whose type is outside the handled set."""

    code = "unhandled_event_kind"

    def __init__(self, event_type: str, event_id: str | None = None) -> None:
        super().__init__(f"Unhandled event type '{event_type}' (event {event_id or '-'})")
        self.event_type = event_type
        self.event_id = event_id


# ---------------------------------------------------------------------------
# Plan resolution
# ---------------------------------------------------------------------------


class MalformedLineItems(BillingError):
    """The event does not carry exactly one usable line item."""

    code = "malformed_line_items"


class UnknownPriceId(BillingError):
    """No configured plan matches the processor price identifier."""

    code = "unknown_price_id"

    def __init__(self, price_id: str) -> None:
        super().__init__(f"No plan configured for price id '{price_id}'")
        self.price_id = price_id


# ---------------------------------------------------------------------------
# Subscription state
# ---------------------------------------------------------------------------


class UnknownAccount(BillingError):
    """No tenant subscription record is linked to the external account."""

    code = "account_not_linked"

    def __init__(self, external_ref: str) -> None:
        super().__init__(f"No tenant linked to external account '{external_ref}'")
        self.external_ref = external_ref


class AccountConflict(BillingError):
    """The external account is already linked to a different tenant."""

    code = "account_conflict"

    def __init__(self, external_ref: str, tenant_id: str) -> None:
        super().__init__(f"External account '{external_ref}' is already linked to tenant '{tenant_id}'")
        self.external_ref = external_ref
        self.tenant_id = tenant_id


class InvalidStatusTransition(BillingError):
    """The requested status change is not allowed by the state machine."""

    code = "invalid_status_transition"

    def __init__(self, current: str, requested: str) -> None:
        super().__init__(f"Cannot transition subscription from '{current}' to '{requested}'")
        self.current = current
        self.requested = requested


# ---------------------------------------------------------------------------
# Delivery
# ---------------------------------------------------------------------------


class MailDeliveryError(BillingError):
    """The mail relay rejected or failed to accept a message."""

    code = "mail_delivery_failed"
