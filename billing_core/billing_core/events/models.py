"""Typed webhook event variants.

Only the fields the reconciliation pipeline reads are declared; everything
else the processor sends is ignored.  The five handled kinds form a
discriminated union on the processor's ``type`` string.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator

CHECKOUT_COMPLETED = "checkout.session.completed"
INVOICE_PAID = "invoice.paid"
INVOICE_PAYMENT_FAILED = "invoice.payment_failed"
SUBSCRIPTION_UPDATED = "customer.subscription.updated"
SUBSCRIPTION_DELETED = "customer.subscription.deleted"

HANDLED_EVENT_TYPES: frozenset[str] = frozenset(
    {
        CHECKOUT_COMPLETED,
        INVOICE_PAID,
        INVOICE_PAYMENT_FAILED,
        SUBSCRIPTION_UPDATED,
        SUBSCRIPTION_DELETED,
    }
)


class _ProcessorObject(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


def _expandable_id(value: Any) -> Any:
    """Collapse an expanded processor object to its id."""
    if isinstance(value, dict):
        return value.get("id")
    return value


# ---------------------------------------------------------------------------
# Line items
# ---------------------------------------------------------------------------


class PriceRef(_ProcessorObject):
    id: str


class PriceDetails(_ProcessorObject):
    price: str | None = None


class Pricing(_ProcessorObject):
    price_details: PriceDetails | None = None


class LineItem(_ProcessorObject):
    """A single invoice line, subscription item, or checkout line item.

    The processor reports the price either as ``price.id`` (subscription
    items, checkout line items, older invoice lines) or as
    ``pricing.price_details.price`` (newer invoice lines).
    """

    id: str | None = None
    price: PriceRef | None = None
    pricing: Pricing | None = None
    quantity: int | None = None

    @field_validator("price", mode="before")
    @classmethod
    def price_from_id(cls, value: Any) -> Any:
        if isinstance(value, str):
            return {"id": value}
        return value


class LineItemList(_ProcessorObject):
    data: list[LineItem] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Event objects
# ---------------------------------------------------------------------------


class CheckoutSession(_ProcessorObject):
    id: str
    customer: str | None = None
    mode: str
    payment_status: str
    client_reference_id: str | None = None
    metadata: dict[str, str] = Field(default_factory=dict)
    line_items: LineItemList | None = None

    customer_id_from_object = field_validator("customer", mode="before")(_expandable_id)


class Invoice(_ProcessorObject):
    id: str
    customer: str
    subscription: str | None = None
    billing_reason: str | None = None
    period_start: int | None = None
    hosted_invoice_url: str | None = None
    amount_due: int | None = None
    currency: str | None = None
    lines: LineItemList = Field(default_factory=LineItemList)

    ids_from_objects = field_validator("customer", "subscription", mode="before")(_expandable_id)


class Subscription(_ProcessorObject):
    id: str
    customer: str
    status: str
    cancel_at_period_end: bool = False
    current_period_end: int | None = None
    items: LineItemList = Field(default_factory=LineItemList)

    customer_id_from_object = field_validator("customer", mode="before")(_expandable_id)


class _CheckoutData(_ProcessorObject):
    object: CheckoutSession


class _InvoiceData(_ProcessorObject):
    object: Invoice


class _SubscriptionData(_ProcessorObject):
    object: Subscription


# ---------------------------------------------------------------------------
# Event variants
# ---------------------------------------------------------------------------


class _EventBase(_ProcessorObject):
    event_id: str = Field(..., alias="id")
    created: int | None = None
    livemode: bool = False

    @property
    def created_at(self) -> datetime | None:
        if self.created is None:
            return None
        return datetime.fromtimestamp(self.created, tz=UTC)


class CheckoutCompleted(_EventBase):
    """A checkout session finished; carries the tenant link and one-time purchases."""

    type: Literal["checkout.session.completed"]
    data: _CheckoutData

    @property
    def session(self) -> CheckoutSession:
        return self.data.object

    @property
    def external_account_ref(self) -> str | None:
        return self.data.object.customer

    @property
    def tenant_id(self) -> str | None:
        """Tenant the checkout was started for, from metadata or the client reference."""
        obj = self.data.object
        return obj.metadata.get("tenant_id") or obj.client_reference_id

    @property
    def is_paid_one_time_purchase(self) -> bool:
        obj = self.data.object
        return obj.mode == "payment" and obj.payment_status == "paid"


class InvoicePaid(_EventBase):
    """An invoice was paid (initial subscription payment, renewal, or retry)."""

    type: Literal["invoice.paid"]
    data: _InvoiceData

    @property
    def invoice(self) -> Invoice:
        return self.data.object

    @property
    def external_account_ref(self) -> str:
        return self.data.object.customer

    @property
    def period_start(self) -> datetime | None:
        if self.data.object.period_start is None:
            return None
        return datetime.fromtimestamp(self.data.object.period_start, tz=UTC)


class InvoicePaymentFailed(_EventBase):
    """A payment attempt for an invoice failed."""

    type: Literal["invoice.payment_failed"]
    data: _InvoiceData

    @property
    def invoice(self) -> Invoice:
        return self.data.object

    @property
    def external_account_ref(self) -> str:
        return self.data.object.customer


class SubscriptionUpdated(_EventBase):
    """The subscription changed (status, items, or cancellation flag)."""

    type: Literal["customer.subscription.updated"]
    data: _SubscriptionData

    @property
    def subscription(self) -> Subscription:
        return self.data.object

    @property
    def external_account_ref(self) -> str:
        return self.data.object.customer


class SubscriptionDeleted(_EventBase):
    """The subscription ended."""

    type: Literal["customer.subscription.deleted"]
    data: _SubscriptionData

    @property
    def subscription(self) -> Subscription:
        return self.data.object

    @property
    def external_account_ref(self) -> str:
        return self.data.object.customer


BillingEvent = Annotated[
    CheckoutCompleted | InvoicePaid | InvoicePaymentFailed | SubscriptionUpdated | SubscriptionDeleted,
    Field(discriminator="type"),
]

billing_event_adapter: TypeAdapter[BillingEvent] = TypeAdapter(BillingEvent)


class EventEnvelope(_ProcessorObject):
    """Minimal view of any processor event, used before variant decoding."""

    id: str
    type: str
