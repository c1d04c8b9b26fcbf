from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = "20261019_02"
down_revision: str | Sequence[str] | None = "20261019_01"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.add_column(
        "executed_processes",
        sa.Column("held_deviation_id", postgresql.UUID(as_uuid=True), nullable=True),
    )


def downgrade() -> None:
    op.drop_column("executed_processes", "held_deviation_id")
