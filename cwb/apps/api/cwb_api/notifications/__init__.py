"""Notification outbox (durable, drained by the external delivery worker)."""
