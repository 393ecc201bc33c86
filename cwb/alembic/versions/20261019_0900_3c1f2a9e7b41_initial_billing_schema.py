"""initial_billing_schema

Revision ID: 3c1f2a9e7b41
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '3c1f2a9e7b41'
down_revision = None
branch_labels = None
depends_on = None


def _pk() -> sa.Column:
    return sa.Column('id', sa.BIGINT().with_variant(sa.INTEGER(), 'sqlite'), primary_key=True, autoincrement=True)


def _ts(name: str, nullable: bool = False) -> sa.Column:
    return sa.Column(name, sa.TIMESTAMP(timezone=True), nullable=nullable)


def upgrade() -> None:
    op.create_table(
        'tenants',
        sa.Column('tenant_id', sa.TEXT(), primary_key=True),
        sa.Column('display_name', sa.TEXT(), nullable=True),
        sa.Column('email', sa.TEXT(), nullable=True),
        sa.Column('external_customer_ref', sa.TEXT(), nullable=True, unique=True),
        _ts('created_at'),
    )
    op.create_index('idx_tenants_email', 'tenants', ['email'])

    op.create_table(
        'subscriptions',
        _pk(),
        sa.Column('tenant_id', sa.TEXT(), nullable=False),
        sa.Column('external_subscription_ref', sa.TEXT(), nullable=False),
        sa.Column('price_ref', sa.TEXT(), nullable=False),
        sa.Column('status', sa.TEXT(), nullable=False),
        _ts('current_period_start', nullable=True),
        _ts('current_period_end', nullable=True),
        sa.Column('cancel_at_period_end', sa.BOOLEAN(), nullable=False, server_default=sa.false()),
        sa.Column('quota', sa.INTEGER(), nullable=False),
        _ts('created_at'),
        _ts('updated_at'),
        sa.UniqueConstraint('external_subscription_ref', name='uq_subscriptions_external_ref'),
    )
    op.create_index('idx_subscriptions_tenant_created', 'subscriptions', ['tenant_id', 'created_at'])
    op.create_index('idx_subscriptions_status_period_end', 'subscriptions', ['status', 'current_period_end'])

    op.create_table(
        'webhook_events',
        _pk(),
        sa.Column('source', sa.TEXT(), nullable=False),
        sa.Column('external_event_id', sa.TEXT(), nullable=False),
        sa.Column('event_type', sa.TEXT(), nullable=False),
        sa.Column('payload', sa.JSON(), nullable=False),
        sa.Column('payload_hash', sa.TEXT(), nullable=True),
        sa.Column('processed', sa.BOOLEAN(), nullable=False, server_default=sa.false()),
        _ts('processed_at', nullable=True),
        sa.Column('error', sa.TEXT(), nullable=True),
        sa.Column('attempts', sa.INTEGER(), nullable=False, server_default='1'),
        _ts('claimed_at', nullable=True),
        _ts('received_at'),
        sa.UniqueConstraint('source', 'external_event_id', name='uq_webhook_events_source_event'),
    )
    op.create_index('idx_webhook_events_received', 'webhook_events', ['received_at'])
    op.create_index('idx_webhook_events_unprocessed', 'webhook_events', ['processed', 'received_at'])

    op.create_table(
        'payments',
        _pk(),
        sa.Column('tenant_id', sa.TEXT(), nullable=False),
        sa.Column('external_payment_ref', sa.TEXT(), nullable=False),
        sa.Column('external_subscription_ref', sa.TEXT(), nullable=True),
        sa.Column('amount', sa.BIGINT(), nullable=False),
        sa.Column('currency', sa.TEXT(), nullable=False),
        sa.Column('status', sa.TEXT(), nullable=False),
        _ts('created_at'),
        _ts('updated_at'),
        sa.UniqueConstraint('external_payment_ref', name='uq_payments_external_ref'),
    )
    op.create_index('idx_payments_tenant', 'payments', ['tenant_id'])

    op.create_table(
        'notification_queue',
        _pk(),
        sa.Column('tenant_id', sa.TEXT(), nullable=False),
        sa.Column('destination', sa.TEXT(), nullable=False),
        sa.Column('template_name', sa.TEXT(), nullable=False),
        sa.Column('template_data', sa.JSON(), nullable=False),
        _ts('scheduled_for'),
        sa.Column('status', sa.TEXT(), nullable=False, server_default='pending'),
        sa.Column('attempts', sa.INTEGER(), nullable=False, server_default='0'),
        sa.Column('last_error', sa.TEXT(), nullable=True),
        _ts('sent_at', nullable=True),
        _ts('created_at'),
    )
    op.create_index('idx_notification_queue_due', 'notification_queue', ['status', 'scheduled_for'])
    op.create_index(
        'idx_notification_queue_tenant_template', 'notification_queue', ['tenant_id', 'template_name']
    )

    op.create_table(
        'billing_audit_logs',
        _pk(),
        sa.Column('event_type', sa.TEXT(), nullable=False),
        sa.Column('tenant_id', sa.TEXT(), nullable=True),
        sa.Column('related_entity_type', sa.TEXT(), nullable=True),
        sa.Column('related_entity_id', sa.TEXT(), nullable=True),
        sa.Column('actor', sa.TEXT(), nullable=False),
        sa.Column('details', sa.JSON(), nullable=True),
        _ts('created_at'),
    )
    op.create_index('idx_billing_audit_logs_tenant', 'billing_audit_logs', ['tenant_id'])
    op.create_index('idx_billing_audit_logs_created', 'billing_audit_logs', ['created_at'])


def downgrade() -> None:
    op.drop_table('billing_audit_logs')
    op.drop_table('notification_queue')
    op.drop_table('payments')
    op.drop_table('webhook_events')
    op.drop_table('subscriptions')
    op.drop_table('tenants')
