"""Payment record repository."""

from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from cwb_api.db.models import Payment
from cwb_api.db.upsert import insert_for


class PaymentRepository:
    """Payments are upserted by external reference and never deleted."""

    def __init__(self, session: Session):
        self.session = session

    def get_by_external_ref(self, external_ref: str) -> Optional[Payment]:
        stmt = select(Payment).where(Payment.external_payment_ref == external_ref)
        return self.session.execute(stmt).scalar_one_or_none()

    def upsert(
        self,
        *,
        tenant_id: str,
        external_ref: str,
        subscription_ref: Optional[str],
        amount: int,
        currency: str,
        status: str,
        now: datetime,
    ) -> None:
        table = Payment.__table__
        stmt = insert_for(self.session, table).values(
            tenant_id=tenant_id,
            external_payment_ref=external_ref,
            external_subscription_ref=subscription_ref,
            amount=amount,
            currency=currency,
            status=status,
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[table.c.external_payment_ref],
            set_={
                "amount": stmt.excluded.amount,
                "currency": stmt.excluded.currency,
                "status": stmt.excluded.status,
                "updated_at": stmt.excluded.updated_at,
            },
        )
        self.session.execute(stmt)
