"""create_onboarding_session_and_staff_draft

Revision ID: 3f1d2c4b5a60
Revises:
Create Date: 2026-10-17 10:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '3f1d2c4b5a60'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create per-tab onboarding session and per-organization staff draft tables."""
    op.create_table(
        'onboarding_session',
        sa.Column('session_key', sa.String(), primary_key=True),
        sa.Column('role', sa.String(), nullable=True),
        sa.Column('step', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('organization_id', sa.String(), nullable=True),
        sa.Column('restaurant_code', sa.String(), nullable=True),
        sa.Column('owner_name', sa.String(), nullable=True),
        sa.Column('handled_checkout_token', sa.String(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), onupdate=sa.func.now(), nullable=False),
    )
    op.create_index(op.f('ix_onboarding_session_organization_id'), 'onboarding_session', ['organization_id'], unique=False)

    op.create_table(
        'staff_draft',
        sa.Column('organization_id', sa.String(), primary_key=True),
        sa.Column('saved_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('rows', sa.JSON(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), onupdate=sa.func.now(), nullable=False),
    )


def downgrade() -> None:
    """Drop onboarding tables."""
    op.drop_table('staff_draft')
    op.drop_index(op.f('ix_onboarding_session_organization_id'), table_name='onboarding_session')
    op.drop_table('onboarding_session')
