"""Webhook event decoding and verification."""

from billing_core.events.models import (
    CHECKOUT_COMPLETED,
    HANDLED_EVENT_TYPES,
    INVOICE_PAID,
    INVOICE_PAYMENT_FAILED,
    SUBSCRIPTION_DELETED,
    SUBSCRIPTION_UPDATED,
    BillingEvent,
    CheckoutCompleted,
    InvoicePaid,
    InvoicePaymentFailed,
    LineItem,
    SubscriptionDeleted,
    SubscriptionUpdated,
)
from billing_core.events.verifier import classify_payload, verify_and_classify

__all__ = [
    "CHECKOUT_COMPLETED",
    "HANDLED_EVENT_TYPES",
    "INVOICE_PAID",
    "INVOICE_PAYMENT_FAILED",
    "SUBSCRIPTION_DELETED",
    "SUBSCRIPTION_UPDATED",
    "BillingEvent",
    "CheckoutCompleted",
    "InvoicePaid",
    "InvoicePaymentFailed",
    "LineItem",
    "SubscriptionDeleted",
    "SubscriptionUpdated",
    "classify_payload",
    "verify_and_classify",
]
