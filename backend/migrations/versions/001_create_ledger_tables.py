"""Create processed_events, donation_payments and recurring_gifts

Revision ID: 001
Revises:
Create Date: 2026-10-17 12:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _attribution_columns():
    return [
        sa.Column('campaign_slug', sa.String(length=120), nullable=False),
        sa.Column('context_type', sa.String(length=32), nullable=False),
        sa.Column('context_id', sa.String(length=120), nullable=False),
        sa.Column('context_label', sa.String(length=255), nullable=True),
        sa.Column('tier_id', sa.String(length=120), nullable=True),
        sa.Column('tier_label', sa.String(length=255), nullable=True),
        sa.Column('amount_type', sa.String(length=16), nullable=False),
        sa.Column('utm_source', sa.String(length=255), nullable=True),
        sa.Column('utm_medium', sa.String(length=255), nullable=True),
        sa.Column('utm_campaign', sa.String(length=255), nullable=True),
        sa.Column('utm_content', sa.String(length=255), nullable=True),
        sa.Column('utm_term', sa.String(length=255), nullable=True),
        sa.Column('referrer', sa.String(length=1024), nullable=True),
        sa.Column('landing_path', sa.String(length=1024), nullable=True),
    ]


def _timestamp_columns():
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        'processed_events',
        sa.Column('event_id', sa.String(length=255), primary_key=True),
        sa.Column('canonical_type', sa.String(length=100), nullable=False),
        sa.Column('received_at', sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index('ix_processed_events_canonical_type', 'processed_events', ['canonical_type'])

    op.create_table(
        'donation_payments',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('kind', sa.String(length=16), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('amount_minor', sa.Integer(), nullable=False),
        sa.Column('currency', sa.String(length=8), nullable=False),
        sa.Column('donor_key', sa.String(length=255), nullable=True),
        sa.Column('donor_email', sa.String(length=255), nullable=True),
        sa.Column('donor_name', sa.String(length=255), nullable=True),
        sa.Column('billing_country', sa.String(length=8), nullable=True),
        sa.Column('refunded_amount_minor', sa.Integer(), nullable=True),
        sa.Column('refunded_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('stripe_payment_intent_id', sa.String(length=255), nullable=True),
        sa.Column('stripe_invoice_id', sa.String(length=255), nullable=True),
        sa.Column('stripe_session_id', sa.String(length=255), nullable=True),
        sa.Column('stripe_subscription_id', sa.String(length=255), nullable=True),
        sa.Column('stripe_customer_id', sa.String(length=255), nullable=True),
        sa.Column('period_start', sa.DateTime(timezone=True), nullable=True),
        sa.Column('period_end', sa.DateTime(timezone=True), nullable=True),
        sa.Column('stripe_event_id', sa.String(length=255), nullable=False),
        *_attribution_columns(),
        *_timestamp_columns(),
    )
    op.create_index('ix_donation_payments_id', 'donation_payments', ['id'])
    op.create_index('ix_donation_payments_donor_key', 'donation_payments', ['donor_key'])
    op.create_index('ix_donation_payments_campaign_slug', 'donation_payments', ['campaign_slug'])
    op.create_index('ix_donation_payments_stripe_payment_intent_id', 'donation_payments',
                    ['stripe_payment_intent_id'], unique=True)
    op.create_index('ix_donation_payments_stripe_invoice_id', 'donation_payments',
                    ['stripe_invoice_id'], unique=True)
    op.create_index('ix_donation_payments_stripe_subscription_id', 'donation_payments',
                    ['stripe_subscription_id'])

    op.create_table(
        'recurring_gifts',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('stripe_subscription_id', sa.String(length=255), nullable=False),
        sa.Column('stripe_customer_id', sa.String(length=255), nullable=True),
        sa.Column('donor_key', sa.String(length=255), nullable=True),
        sa.Column('donor_email', sa.String(length=255), nullable=True),
        sa.Column('donor_name', sa.String(length=255), nullable=True),
        sa.Column('amount_minor', sa.Integer(), nullable=False),
        sa.Column('currency', sa.String(length=8), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('canceled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('current_period_end', sa.DateTime(timezone=True), nullable=True),
        sa.Column('stripe_event_id', sa.String(length=255), nullable=True),
        *_attribution_columns(),
        *_timestamp_columns(),
    )
    op.create_index('ix_recurring_gifts_id', 'recurring_gifts', ['id'])
    op.create_index('ix_recurring_gifts_stripe_subscription_id', 'recurring_gifts',
                    ['stripe_subscription_id'], unique=True)
    op.create_index('ix_recurring_gifts_stripe_customer_id', 'recurring_gifts', ['stripe_customer_id'])
    op.create_index('ix_recurring_gifts_donor_key', 'recurring_gifts', ['donor_key'])
    op.create_index('ix_recurring_gifts_campaign_slug', 'recurring_gifts', ['campaign_slug'])


def downgrade() -> None:
    op.drop_table('recurring_gifts')
    op.drop_table('donation_payments')
    op.drop_table('processed_events')
