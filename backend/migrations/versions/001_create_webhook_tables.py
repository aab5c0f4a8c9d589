"""Create webhook reconciliation tables

Revision ID: 001
Revises: 
Create Date: 2026-10-17 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'subscriptions',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.String(length=64), nullable=False),
        sa.Column('product_id', sa.String(length=64), nullable=False),
        sa.Column('customer_email', sa.String(length=255), nullable=True),
        sa.Column('external_reference', sa.String(length=255), nullable=True),
        sa.Column('processor_subscription_id', sa.String(length=255), nullable=True),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='pending'),
        sa.Column('amount', sa.Numeric(12, 2), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=True),
        sa.Column('next_billing_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_subscriptions_id', 'subscriptions', ['id'])
    op.create_index('ix_subscriptions_user_id', 'subscriptions', ['user_id'])
    op.create_index('ix_subscriptions_product_id', 'subscriptions', ['product_id'])
    op.create_index('ix_subscriptions_customer_email', 'subscriptions', ['customer_email'])
    op.create_index('ix_subscriptions_external_reference', 'subscriptions', ['external_reference'])
    op.create_index(
        'ix_subscriptions_processor_subscription_id', 'subscriptions', ['processor_subscription_id'], unique=True
    )

    op.create_table(
        'orders',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.String(length=64), nullable=True),
        sa.Column('customer_email', sa.String(length=255), nullable=True),
        sa.Column('external_reference', sa.String(length=255), nullable=True),
        sa.Column('payment_reference', sa.String(length=255), nullable=True),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='pending_payment'),
        sa.Column('payment_status', sa.String(length=30), nullable=True),
        sa.Column('total', sa.Numeric(12, 2), nullable=True),
        sa.Column('confirmed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_orders_id', 'orders', ['id'])
    op.create_index('ix_orders_user_id', 'orders', ['user_id'])
    op.create_index('ix_orders_external_reference', 'orders', ['external_reference'])
    op.create_index('ix_orders_payment_reference', 'orders', ['payment_reference'])

    op.create_table(
        'webhook_notifications',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('notification_id', sa.String(length=255), nullable=False),
        sa.Column('notification_type', sa.String(length=100), nullable=True),
        sa.Column('action', sa.String(length=100), nullable=True),
        sa.Column('resource_id', sa.String(length=255), nullable=True),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='received'),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('raw_body', sa.Text(), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('received_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index('ix_webhook_notifications_id', 'webhook_notifications', ['id'])
    op.create_index(
        'ix_webhook_notifications_notification_id', 'webhook_notifications', ['notification_id'], unique=True
    )
    op.create_index('ix_webhook_notifications_notification_type', 'webhook_notifications', ['notification_type'])
    op.create_index('ix_webhook_notifications_resource_id', 'webhook_notifications', ['resource_id'])
    op.create_index('ix_webhook_notifications_received_at', 'webhook_notifications', ['received_at'])

    op.create_table(
        'idempotency_locks',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('lock_key', sa.String(length=255), nullable=False),
        sa.Column('owner', sa.String(length=64), nullable=False),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_idempotency_locks_id', 'idempotency_locks', ['id'])
    op.create_index('ix_idempotency_locks_lock_key', 'idempotency_locks', ['lock_key'], unique=True)
    op.create_index('ix_idempotency_locks_expires_at', 'idempotency_locks', ['expires_at'])

    op.create_table(
        'idempotent_results',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('operation_key', sa.String(length=255), nullable=False),
        sa.Column('result_data', sa.JSON(), nullable=True),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_idempotent_results_id', 'idempotent_results', ['id'])
    op.create_index('ix_idempotent_results_operation_key', 'idempotent_results', ['operation_key'], unique=True)
    op.create_index('ix_idempotent_results_expires_at', 'idempotent_results', ['expires_at'])

    op.create_table(
        'status_history',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('entity_type', sa.String(length=20), nullable=False),
        sa.Column('entity_id', sa.Integer(), nullable=False),
        sa.Column('previous_status', sa.String(length=30), nullable=True),
        sa.Column('new_status', sa.String(length=30), nullable=False),
        sa.Column('cause', sa.Text(), nullable=False),
        sa.Column('applied_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_status_history_id', 'status_history', ['id'])
    op.create_index('ix_status_history_entity_type', 'status_history', ['entity_type'])
    op.create_index('ix_status_history_entity_id', 'status_history', ['entity_id'])

    op.create_table(
        'billing_records',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('subscription_id', sa.Integer(), sa.ForeignKey('subscriptions.id'), nullable=False),
        sa.Column('processor_payment_id', sa.String(length=255), nullable=False),
        sa.Column('amount', sa.Numeric(12, 2), nullable=True),
        sa.Column('currency', sa.String(length=10), nullable=True),
        sa.Column('status', sa.String(length=30), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_billing_records_id', 'billing_records', ['id'])
    op.create_index('ix_billing_records_subscription_id', 'billing_records', ['subscription_id'])
    op.create_index(
        'ix_billing_records_processor_payment_id', 'billing_records', ['processor_payment_id'], unique=True
    )

    op.create_table(
        'reconciliation_issues',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('kind', sa.String(length=30), nullable=False),
        sa.Column('notification_id', sa.String(length=255), nullable=True),
        sa.Column('notification_type', sa.String(length=100), nullable=True),
        sa.Column('resource_id', sa.String(length=255), nullable=True),
        sa.Column('entity_type', sa.String(length=20), nullable=True),
        sa.Column('entity_id', sa.Integer(), nullable=True),
        sa.Column('keys', sa.JSON(), nullable=True),
        sa.Column('detail', sa.Text(), nullable=True),
        sa.Column('resolved', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_reconciliation_issues_id', 'reconciliation_issues', ['id'])
    op.create_index('ix_reconciliation_issues_kind', 'reconciliation_issues', ['kind'])
    op.create_index('ix_reconciliation_issues_notification_id', 'reconciliation_issues', ['notification_id'])


def downgrade() -> None:
    op.drop_table('reconciliation_issues')
    op.drop_table('billing_records')
    op.drop_table('status_history')
    op.drop_table('idempotent_results')
    op.drop_table('idempotency_locks')
    op.drop_table('webhook_notifications')
    op.drop_table('orders')
    op.drop_table('subscriptions')
