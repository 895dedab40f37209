"""track sweeper attempts on payment intents

Revision ID: 0002_reconcile_attempts
Revises: 0001_initial
Create Date: 2026-10-19 12:00:00.000000
"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '0002_reconcile_attempts'
down_revision = '0001_initial'
branch_labels = None
depends_on = None


def upgrade():
    op.add_column('payment_intents', sa.Column('reconcile_attempts', sa.Integer(), nullable=False, server_default='0'))
    op.add_column('payment_intents', sa.Column('last_reconciled_at', sa.DateTime(timezone=True), nullable=True))


def downgrade():
    with op.batch_alter_table('payment_intents') as batch_op:
        batch_op.drop_column('last_reconciled_at')
        batch_op.drop_column('reconcile_attempts')
