"""Durable and in-memory stores for idempotency state."""
