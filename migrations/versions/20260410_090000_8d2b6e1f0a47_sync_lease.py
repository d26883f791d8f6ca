"""sync_lease

Revision ID: 8d2b6e1f0a47
Revises: 4c1e2f7a9b3d
Create Date: 2026-04-10 09:00:00.000000

"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "8d2b6e1f0a47"
down_revision: Union[str, Sequence[str], None] = "4c1e2f7a9b3d"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema."""
    op.add_column("sync_health", sa.Column("lease_owner", sa.String(length=64), nullable=True))
    op.add_column("sync_health", sa.Column("lease_expires_at", sa.DateTime(timezone=True), nullable=True))


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_column("sync_health", "lease_expires_at")
    op.drop_column("sync_health", "lease_owner")
