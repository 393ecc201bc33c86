"""Billing audit log writer."""

from typing import Any, Optional

from sqlalchemy.orm import Session

from cwb_api.db.models import BillingAuditLog


def write_audit_log(
    session: Session,
    *,
    event_type: str,
    tenant_id: Optional[str],
    actor: str,
    related_entity_type: Optional[str] = None,
    related_entity_id: Optional[str] = None,
    details: Optional[dict[str, Any]] = None,
) -> BillingAuditLog:
    """Append an audit row to the caller's transaction (no commit)."""
    entry = BillingAuditLog(
        event_type=event_type,
        tenant_id=tenant_id,
        actor=actor,
        related_entity_type=related_entity_type,
        related_entity_id=related_entity_id,
        details=details,
    )
    session.add(entry)
    return entry
