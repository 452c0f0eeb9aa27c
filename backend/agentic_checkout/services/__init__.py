"""Checkout, vault and idempotency services."""
