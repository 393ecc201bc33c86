"""Request context management for observability.

Context variables for request tracking across async boundaries.
"""

from contextvars import ContextVar

# Request ID - unique per HTTP request
request_id_var: ContextVar[str] = ContextVar("request_id", default="")

# Tenant ID - tenant whose billing state is being touched
tenant_id_var: ContextVar[str] = ContextVar("tenant_id", default="")

# Event ID - processor event currently being handled by the webhook ingress
event_id_var: ContextVar[str] = ContextVar("event_id", default="")
