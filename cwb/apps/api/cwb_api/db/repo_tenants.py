"""Tenant mirror repository."""

import logging
from typing import Optional

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from cwb_api.db.models import Tenant

logger = logging.getLogger(__name__)


class TenantRepository:
    """Reads the identity-owned tenant mirror; writes only the customer ref."""

    def __init__(self, session: Session):
        self.session = session

    def get(self, tenant_id: str) -> Optional[Tenant]:
        return self.session.get(Tenant, tenant_id)

    def get_by_email(self, email: str) -> Optional[Tenant]:
        stmt = (
            select(Tenant)
            .where(func.lower(Tenant.email) == email.strip().lower())
            .order_by(Tenant.created_at.asc())
            .limit(1)
        )
        return self.session.execute(stmt).scalar_one_or_none()

    def get_by_customer_ref(self, customer_ref: str) -> Optional[Tenant]:
        stmt = select(Tenant).where(Tenant.external_customer_ref == customer_ref)
        return self.session.execute(stmt).scalar_one_or_none()

    def ensure(
        self,
        tenant_id: str,
        email: Optional[str] = None,
        display_name: Optional[str] = None,
    ) -> Tenant:
        """Create the mirror row if missing; fill contact fields that are still empty."""
        tenant = self.get(tenant_id)
        if tenant is None:
            tenant = Tenant(tenant_id=tenant_id, email=email, display_name=display_name)
            self.session.add(tenant)
            self.session.flush()
            return tenant

        if email and not tenant.email:
            tenant.email = email
        if display_name and not tenant.display_name:
            tenant.display_name = display_name
        return tenant

    def set_customer_ref_once(self, tenant_id: str, customer_ref: str) -> bool:
        """Set external_customer_ref only while it is still NULL.

        Returns:
            True if this call set it, False if a value was already present
        """
        stmt = (
            update(Tenant)
            .where(Tenant.tenant_id == tenant_id, Tenant.external_customer_ref.is_(None))
            .values(external_customer_ref=customer_ref)
            .execution_options(synchronize_session=False)
        )
        result = self.session.execute(stmt)
        if result.rowcount == 1:
            logger.info(
                "TENANT_CUSTOMER_REF_SET",
                extra={"tenant_id": tenant_id, "customer_ref": customer_ref},
            )
            return True
        return False
