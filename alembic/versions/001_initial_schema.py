"""001 Initial schema - tenancy, commerce entities, gift card ledger, retry jobs

Revision ID: 001_initial_schema
Revises:
Create Date: 2026-10-18
"""

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '001_initial_schema'
down_revision = None
branch_labels = None
depends_on = None


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
    ]


def _org_fk():
    return sa.Column(
        'organization_id', sa.String(36),
        sa.ForeignKey('organizations.id', ondelete='CASCADE'), nullable=False,
    )


def upgrade():
    # 1. Tenancy and reference data
    op.create_table(
        'organizations',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('merchant_id', sa.String(64), nullable=False, unique=True),
        sa.Column('name', sa.String(255), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
    )
    op.create_index('ix_organizations_active', 'organizations', ['is_active', 'created_at'])

    op.create_table(
        'locations',
        sa.Column('id', sa.String(36), primary_key=True),
        _org_fk(),
        sa.Column('external_id', sa.String(64), nullable=False),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('address', sa.JSON(), nullable=True),
        sa.Column('timezone', sa.String(64), nullable=True),
        sa.Column('is_stub', sa.Boolean(), nullable=False, server_default=sa.false()),
        *_timestamps(),
        sa.UniqueConstraint('organization_id', 'external_id', name='uq_locations_org_external'),
    )
    op.create_index('ix_locations_external', 'locations', ['external_id'])

    op.create_table(
        'customers',
        sa.Column('id', sa.String(36), primary_key=True),
        _org_fk(),
        sa.Column('external_id', sa.String(64), nullable=False, unique=True),
        sa.Column('given_name', sa.String(255), nullable=True),
        sa.Column('family_name', sa.String(255), nullable=True),
        sa.Column('email', sa.String(255), nullable=True),
        sa.Column('phone', sa.String(50), nullable=True),
        *_timestamps(),
    )
    op.create_index('ix_customers_org', 'customers', ['organization_id'])

    op.create_table(
        'staff_members',
        sa.Column('id', sa.String(36), primary_key=True),
        _org_fk(),
        sa.Column('external_id', sa.String(64), nullable=False),
        sa.Column('given_name', sa.String(255), nullable=True),
        sa.Column('family_name', sa.String(255), nullable=True),
        sa.Column('email', sa.String(255), nullable=True),
        sa.Column('role', sa.String(50), nullable=True),
        sa.Column('status', sa.String(20), nullable=True),
        sa.Column('upstream_updated_at', sa.DateTime(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint('organization_id', 'external_id', name='uq_staff_org_external'),
    )

    op.create_table(
        'service_variations',
        sa.Column('id', sa.String(36), primary_key=True),
        _org_fk(),
        sa.Column('external_id', sa.String(64), nullable=False),
        sa.Column('name', sa.String(255), nullable=True),
        sa.Column('duration_minutes', sa.Integer(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint('organization_id', 'external_id', name='uq_service_variations_org_external'),
    )

    # 2. Bookings
    op.create_table(
        'bookings',
        sa.Column('id', sa.String(36), primary_key=True),
        _org_fk(),
        sa.Column('external_id', sa.String(64), nullable=False),
        sa.Column('location_id', sa.String(36), sa.ForeignKey('locations.id', ondelete='SET NULL'), nullable=True),
        sa.Column('customer_id', sa.String(36), sa.ForeignKey('customers.id', ondelete='SET NULL'), nullable=True),
        sa.Column('status', sa.String(30), nullable=True),
        sa.Column('version', sa.Integer(), nullable=True),
        sa.Column('start_at', sa.DateTime(), nullable=True),
        sa.Column('source', sa.String(50), nullable=True),
        sa.Column('creator_type', sa.String(30), nullable=True),
        sa.Column('customer_note', sa.String(1000), nullable=True),
        sa.Column('upstream_created_at', sa.DateTime(), nullable=True),
        sa.Column('upstream_updated_at', sa.DateTime(), nullable=True),
        sa.Column('raw_payload', sa.JSON(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint('organization_id', 'external_id', name='uq_bookings_org_external'),
    )
    op.create_index('ix_bookings_customer_start', 'bookings', ['customer_id', 'start_at'])
    op.create_index('ix_bookings_location_start', 'bookings', ['location_id', 'start_at'])

    op.create_table(
        'booking_segments',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('booking_id', sa.String(36), sa.ForeignKey('bookings.id', ondelete='CASCADE'), nullable=False),
        sa.Column('position', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('service_variation_id', sa.String(64), nullable=True),
        sa.Column('service_variation_version', sa.String(32), nullable=True),
        sa.Column('external_team_member_id', sa.String(64), nullable=True),
        sa.Column('duration_minutes', sa.Integer(), nullable=True),
        sa.Column('intermission_minutes', sa.Integer(), nullable=True),
        sa.Column('any_team_member', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_booking_segments_booking', 'booking_segments', ['booking_id', 'position'])
    op.create_index('ix_booking_segments_service', 'booking_segments', ['service_variation_id'])

    # 3. Orders and line items
    op.create_table(
        'orders',
        sa.Column('id', sa.String(36), primary_key=True),
        _org_fk(),
        sa.Column('external_id', sa.String(64), nullable=False),
        sa.Column('location_id', sa.String(36), sa.ForeignKey('locations.id', ondelete='SET NULL'), nullable=True),
        sa.Column('customer_id', sa.String(36), sa.ForeignKey('customers.id', ondelete='SET NULL'), nullable=True),
        sa.Column('state', sa.String(20), nullable=True),
        sa.Column('version', sa.Integer(), nullable=True),
        sa.Column('total_money_cents', sa.Integer(), nullable=True),
        sa.Column('total_tax_cents', sa.Integer(), nullable=True),
        sa.Column('total_discount_cents', sa.Integer(), nullable=True),
        sa.Column('total_tip_cents', sa.Integer(), nullable=True),
        sa.Column('currency', sa.String(3), nullable=True),
        sa.Column('booking_id', sa.String(36), sa.ForeignKey('bookings.id', ondelete='SET NULL'), nullable=True),
        sa.Column('booking_confidence', sa.String(20), nullable=True),
        sa.Column('upstream_created_at', sa.DateTime(), nullable=True),
        sa.Column('upstream_updated_at', sa.DateTime(), nullable=True),
        sa.Column('raw_payload', sa.JSON(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint('organization_id', 'external_id', name='uq_orders_org_external'),
    )
    op.create_index('ix_orders_customer_created', 'orders', ['customer_id', 'upstream_created_at'])
    op.create_index('ix_orders_booking', 'orders', ['booking_id'])

    op.create_table(
        'order_line_items',
        sa.Column('id', sa.String(36), primary_key=True),
        _org_fk(),
        sa.Column('order_id', sa.String(36), sa.ForeignKey('orders.id', ondelete='CASCADE'), nullable=False),
        sa.Column('uid', sa.String(64), nullable=True),
        sa.Column('name', sa.String(255), nullable=True),
        sa.Column('variation_name', sa.String(255), nullable=True),
        sa.Column('quantity', sa.String(20), nullable=True),
        sa.Column('item_type', sa.String(30), nullable=True),
        sa.Column('service_variation_id', sa.String(64), nullable=True),
        sa.Column('base_price_cents', sa.Integer(), nullable=True),
        sa.Column('gross_sales_cents', sa.Integer(), nullable=True),
        sa.Column('total_tax_cents', sa.Integer(), nullable=True),
        sa.Column('total_discount_cents', sa.Integer(), nullable=True),
        sa.Column('total_cents', sa.Integer(), nullable=True),
        sa.Column('currency', sa.String(3), nullable=True),
        sa.Column('order_state', sa.String(20), nullable=True),
        sa.Column('order_version', sa.Integer(), nullable=True),
        sa.Column('order_total_cents', sa.Integer(), nullable=True),
        sa.Column('order_tax_cents', sa.Integer(), nullable=True),
        sa.Column('order_discount_cents', sa.Integer(), nullable=True),
        sa.Column('booking_id', sa.String(36), sa.ForeignKey('bookings.id', ondelete='SET NULL'), nullable=True),
        sa.Column('technician_id', sa.String(36), sa.ForeignKey('staff_members.id', ondelete='SET NULL'), nullable=True),
        sa.Column('technician_confidence', sa.String(20), nullable=True),
        sa.Column('administrator_id', sa.String(36), sa.ForeignKey('staff_members.id', ondelete='SET NULL'), nullable=True),
        sa.Column('administrator_confidence', sa.String(20), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint('organization_id', 'uid', name='uq_line_items_org_uid'),
    )
    op.create_index('ix_line_items_order', 'order_line_items', ['order_id'])
    op.create_index('ix_line_items_service', 'order_line_items', ['service_variation_id'])

    # 4. Payments
    op.create_table(
        'payments',
        sa.Column('id', sa.String(36), primary_key=True),
        _org_fk(),
        sa.Column('external_id', sa.String(64), nullable=False),
        sa.Column('location_id', sa.String(36), sa.ForeignKey('locations.id', ondelete='SET NULL'), nullable=True),
        sa.Column('customer_id', sa.String(36), sa.ForeignKey('customers.id', ondelete='SET NULL'), nullable=True),
        sa.Column('external_order_id', sa.String(64), nullable=True),
        sa.Column('external_team_member_id', sa.String(64), nullable=True),
        sa.Column('status', sa.String(20), nullable=True),
        sa.Column('source_type', sa.String(30), nullable=True),
        sa.Column('amount_cents', sa.Integer(), nullable=True),
        sa.Column('tip_cents', sa.Integer(), nullable=True),
        sa.Column('total_cents', sa.Integer(), nullable=True),
        sa.Column('approved_cents', sa.Integer(), nullable=True),
        sa.Column('refunded_cents', sa.Integer(), nullable=True),
        sa.Column('currency', sa.String(3), nullable=True),
        sa.Column('card_brand', sa.String(30), nullable=True),
        sa.Column('card_last4', sa.String(4), nullable=True),
        sa.Column('receipt_number', sa.String(64), nullable=True),
        sa.Column('receipt_url', sa.String(500), nullable=True),
        sa.Column('order_id', sa.String(36), sa.ForeignKey('orders.id', ondelete='SET NULL'), nullable=True),
        sa.Column('booking_id', sa.String(36), sa.ForeignKey('bookings.id', ondelete='SET NULL'), nullable=True),
        sa.Column('link_confidence', sa.String(20), nullable=True),
        sa.Column('technician_id', sa.String(36), sa.ForeignKey('staff_members.id', ondelete='SET NULL'), nullable=True),
        sa.Column('administrator_id', sa.String(36), sa.ForeignKey('staff_members.id', ondelete='SET NULL'), nullable=True),
        sa.Column('upstream_created_at', sa.DateTime(), nullable=True),
        sa.Column('upstream_updated_at', sa.DateTime(), nullable=True),
        sa.Column('raw_payload', sa.JSON(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint('organization_id', 'external_id', name='uq_payments_org_external'),
    )
    op.create_index('ix_payments_external_order', 'payments', ['organization_id', 'external_order_id'])
    op.create_index('ix_payments_order', 'payments', ['order_id'])
    op.create_index('ix_payments_unlinked', 'payments', ['booking_id', 'upstream_created_at'])

    # 5. Gift card ledger
    op.create_table(
        'gift_cards',
        sa.Column('id', sa.String(36), primary_key=True),
        _org_fk(),
        sa.Column('external_id', sa.String(64), nullable=False),
        sa.Column('gan', sa.String(64), nullable=True),
        sa.Column('card_type', sa.String(20), nullable=True),
        sa.Column('state', sa.String(20), nullable=True),
        sa.Column('customer_id', sa.String(36), sa.ForeignKey('customers.id', ondelete='SET NULL'), nullable=True),
        sa.Column('current_balance_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('reported_balance_cents', sa.Integer(), nullable=True),
        sa.Column('currency', sa.String(3), nullable=True),
        sa.Column('upstream_created_at', sa.DateTime(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint('organization_id', 'external_id', name='uq_gift_cards_org_external'),
    )
    op.create_index('ix_gift_cards_gan', 'gift_cards', ['gan'])

    op.create_table(
        'gift_card_transactions',
        sa.Column('id', sa.String(36), primary_key=True),
        _org_fk(),
        sa.Column('gift_card_id', sa.String(36), sa.ForeignKey('gift_cards.id', ondelete='CASCADE'), nullable=False),
        sa.Column('activity_id', sa.String(64), nullable=False),
        sa.Column('activity_type', sa.String(30), nullable=False),
        sa.Column('amount_cents', sa.Integer(), nullable=False),
        sa.Column('currency', sa.String(3), nullable=True),
        sa.Column('external_location_id', sa.String(64), nullable=True),
        sa.Column('external_order_id', sa.String(64), nullable=True),
        sa.Column('external_payment_id', sa.String(64), nullable=True),
        sa.Column('reason', sa.String(100), nullable=True),
        sa.Column('occurred_at', sa.DateTime(), nullable=True),
        sa.Column('raw_payload', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.UniqueConstraint('activity_id', name='uq_gift_card_transactions_activity'),
    )
    op.create_index('ix_gift_card_transactions_card', 'gift_card_transactions', ['gift_card_id', 'occurred_at'])

    # 6. Retry jobs and delivery audit
    op.create_table(
        'retry_jobs',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('correlation_id', sa.String(255), nullable=False, unique=True),
        sa.Column('stage', sa.String(50), nullable=False),
        sa.Column('organization_id', sa.String(36), nullable=True),
        sa.Column('payload', sa.JSON(), nullable=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='queued'),
        sa.Column('outcome', sa.String(30), nullable=True),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('max_attempts', sa.Integer(), nullable=False, server_default='5'),
        sa.Column('scheduled_at', sa.DateTime(), nullable=False),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('error_code', sa.String(50), nullable=True),
        sa.Column('lock_owner', sa.String(100), nullable=True),
        sa.Column('locked_at', sa.DateTime(), nullable=True),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        *_timestamps(),
    )
    op.create_index('ix_retry_jobs_due', 'retry_jobs', ['status', 'scheduled_at'])
    op.create_index('ix_retry_jobs_stage_status', 'retry_jobs', ['stage', 'status'])

    op.create_table(
        'webhook_event_logs',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('event_id', sa.String(255), nullable=False, unique=True),
        sa.Column('event_type', sa.String(100), nullable=True),
        sa.Column('merchant_id', sa.String(64), nullable=True),
        sa.Column('organization_id', sa.String(36), nullable=True),
        sa.Column('payload_hash', sa.String(64), nullable=True),
        sa.Column('status', sa.String(20), nullable=True),
        sa.Column('result_action', sa.String(50), nullable=True),
        sa.Column('entity_id', sa.String(36), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('received_at', sa.DateTime(), nullable=True),
        sa.Column('processed_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_webhook_event_status', 'webhook_event_logs', ['status', 'received_at'])
    op.create_index('ix_webhook_event_type', 'webhook_event_logs', ['event_type', 'received_at'])


def downgrade():
    for table in (
        'webhook_event_logs',
        'retry_jobs',
        'gift_card_transactions',
        'gift_cards',
        'payments',
        'order_line_items',
        'orders',
        'booking_segments',
        'bookings',
        'service_variations',
        'staff_members',
        'customers',
        'locations',
        'organizations',
    ):
        op.drop_table(table)
