"""Billing API: Stripe webhook reconciliation and notification digests."""

__version__ = "0.1.0"
