"""initial

Revision ID: 0001_initial
Revises: 
Create Date: 2026-10-19 00:00:00.000000
"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '0001_initial'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    # ### commands auto generated ###
    op.create_table('payment_intents',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('checkout_id', sa.String(length=128), nullable=True),
        sa.Column('merchant_request_id', sa.String(length=128), nullable=True),
        sa.Column('phone', sa.String(length=16), nullable=False),
        sa.Column('amount', sa.Integer(), nullable=False),
        sa.Column('currency', sa.String(length=8), nullable=False, server_default='KES'),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='pending'),
        sa.Column('reference', sa.String(length=64), nullable=True),
        sa.Column('description', sa.String(length=255), nullable=True),
        sa.Column('receipt_number', sa.String(length=64), nullable=True),
        sa.Column('transaction_date', sa.String(length=32), nullable=True),
        sa.Column('result_code', sa.Integer(), nullable=True),
        sa.Column('result_desc', sa.String(length=512), nullable=True),
        sa.Column('raw_response', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint('checkout_id', name='payment_intents_checkout_id_key'),
        sa.CheckConstraint('amount > 0', name='ck_payment_intents_amount_positive'),
    )
    op.create_index('ix_payment_intents_phone', 'payment_intents', ['phone'], unique=False)
    op.create_index('ix_payment_intents_status', 'payment_intents', ['status'], unique=False)
    op.create_index('ix_payment_intents_created_at', 'payment_intents', ['created_at'], unique=False)
    op.create_index('ix_payment_intents_status_created', 'payment_intents', ['status', 'created_at'], unique=False)

    op.create_table('audit_logs',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('actor', sa.String(length=64), nullable=False),
        sa.Column('action', sa.String(length=255), nullable=False),
        sa.Column('object_type', sa.String(length=128), nullable=True),
        sa.Column('object_id', sa.String(length=128), nullable=True),
        sa.Column('detail', sa.JSON(), nullable=True),
        sa.Column('ip_address', sa.String(length=64), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
    )
    op.create_index('ix_audit_logs_actor', 'audit_logs', ['actor'], unique=False)
    op.create_index('ix_audit_logs_object_id', 'audit_logs', ['object_id'], unique=False)
    # ### end Alembic commands ###


def downgrade():
    op.drop_index('ix_audit_logs_object_id', table_name='audit_logs')
    op.drop_index('ix_audit_logs_actor', table_name='audit_logs')
    op.drop_table('audit_logs')
    op.drop_index('ix_payment_intents_status_created', table_name='payment_intents')
    op.drop_index('ix_payment_intents_created_at', table_name='payment_intents')
    op.drop_index('ix_payment_intents_status', table_name='payment_intents')
    op.drop_index('ix_payment_intents_phone', table_name='payment_intents')
    op.drop_table('payment_intents')
