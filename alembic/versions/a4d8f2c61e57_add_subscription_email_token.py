"""add subscription email token

Revision ID: a4d8f2c61e57
Revises: 7c1e4b9a2d30
Create Date: 2026-10-19 14:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "a4d8f2c61e57"
down_revision: Union[str, None] = "7c1e4b9a2d30"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.add_column(
        "subscriptions",
        sa.Column("provider_email_token", sa.String(length=120), nullable=True),
    )


def downgrade() -> None:
    op.drop_column("subscriptions", "provider_email_token")
