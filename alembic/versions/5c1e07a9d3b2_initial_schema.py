"""initial schema: credentials, grounding links, settings, message log

Revision ID: 5c1e07a9d3b2
Revises:
Create Date: 2026-10-12 18:04:51.302117

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "5c1e07a9d3b2"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema."""
    op.create_table(
        "user_credential",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.BigInteger(), nullable=False),
        sa.Column("provider", sa.String(length=64), nullable=False),
        sa.Column("api_key", sa.String(), nullable=False),
        sa.Column("updated_time", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("user_id", "provider", name="uq_user_credential_provider"),
    )
    op.create_index(
        op.f("ix_user_credential_user_id"), "user_credential", ["user_id"], unique=False
    )

    op.create_table(
        "vertex_links",
        sa.Column("id", sa.String(length=32), primary_key=True),
        sa.Column("links", sa.JSON(), nullable=False),
        sa.Column("sent", sa.Boolean(), nullable=False),
        sa.Column("created_time", sa.DateTime(), nullable=False),
    )

    op.create_table(
        "system_setting",
        sa.Column("key", sa.String(length=128), primary_key=True),
        sa.Column("value", sa.JSON(), nullable=False),
    )

    op.create_table(
        "message_log",
        sa.Column("chat_id", sa.BigInteger(), primary_key=True),
        sa.Column("message_id", sa.BigInteger(), primary_key=True),
        sa.Column("sender_id", sa.BigInteger(), nullable=True),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("created_time", sa.DateTime(), nullable=False),
    )


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_table("message_log")
    op.drop_table("system_setting")
    op.drop_table("vertex_links")
    op.drop_index(op.f("ix_user_credential_user_id"), table_name="user_credential")
    op.drop_table("user_credential")
