"""Store attachment bytes in the database and settle on the "maybe" attendance."""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "0002_file_blobs"
down_revision = "0001_initial"
branch_labels = None
depends_on = None

ATTACHMENT_TABLES = ("recipes", "shared_content")


def upgrade() -> None:
    for table in ATTACHMENT_TABLES:
        op.execute(f"DROP TABLE IF EXISTS _alembic_tmp_{table}")
        with op.batch_alter_table(table) as batch_op:
            batch_op.alter_column(
                "file_url",
                existing_type=sa.String(length=512),
                nullable=True,
            )
            batch_op.add_column(sa.Column("file_data", sa.LargeBinary(), nullable=True))
            batch_op.add_column(
                sa.Column("content_type", sa.String(length=128), nullable=True)
            )
            batch_op.add_column(sa.Column("file_size", sa.Integer(), nullable=True))

    op.execute("UPDATE rsvps SET attendance = 'maybe' WHERE attendance = 'unsure'")


def downgrade() -> None:
    for table in ATTACHMENT_TABLES:
        with op.batch_alter_table(table) as batch_op:
            batch_op.drop_column("file_size")
            batch_op.drop_column("content_type")
            batch_op.drop_column("file_data")
            batch_op.alter_column(
                "file_url",
                existing_type=sa.String(length=512),
                nullable=False,
            )
