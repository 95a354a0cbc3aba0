"""Billing core: plan catalog, webhook event decoding, and the state store."""
