"""create video identity and content tables

Revision ID: 20261019_000001
Revises:
Create Date: 2026-10-19 00:00:01.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20261019_000001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "video_identities",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("external_id", sa.String(), nullable=False),
        sa.Column("source_url", sa.String(), nullable=False),
        sa.Column("download_status", sa.String(), nullable=False, server_default="pending"),
        sa.Column("storage_url", sa.String(), nullable=True),
        sa.Column("storage_key", sa.String(), nullable=True),
        sa.Column("download_progress", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("download_error", sa.Text(), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column("downloaded_format", sa.JSON(), nullable=True),
        sa.Column("usage_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_accessed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("download_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("download_completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("source_url"),
    )
    op.create_index(op.f("ix_video_identities_external_id"), "video_identities", ["external_id"], unique=True)
    op.create_index(op.f("ix_video_identities_download_status"), "video_identities", ["download_status"], unique=False)

    op.create_table(
        "contents",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("title", sa.String(), nullable=True),
        sa.Column("source_url", sa.String(), nullable=True),
        sa.Column("start_time", sa.Integer(), nullable=True),
        sa.Column("end_time", sa.Integer(), nullable=True),
        sa.Column("download_status", sa.String(), nullable=True),
        sa.Column("downloaded_url", sa.String(), nullable=True),
        sa.Column("download_progress", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("download_error", sa.Text(), nullable=True),
        sa.Column("video_identity_id", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["video_identity_id"], ["video_identities.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_contents_download_status"), "contents", ["download_status"], unique=False)
    op.create_index(op.f("ix_contents_video_identity_id"), "contents", ["video_identity_id"], unique=False)


def downgrade() -> None:
    op.drop_index(op.f("ix_contents_video_identity_id"), table_name="contents")
    op.drop_index(op.f("ix_contents_download_status"), table_name="contents")
    op.drop_table("contents")
    op.drop_index(op.f("ix_video_identities_download_status"), table_name="video_identities")
    op.drop_index(op.f("ix_video_identities_external_id"), table_name="video_identities")
    op.drop_table("video_identities")
