"""create captcha tables

Revision ID: a1c4e7f20b93
Revises:
Create Date: 2026-10-18 12:00:00.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "a1c4e7f20b93"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "captcha_settings",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("chat_id", sa.BigInteger(), nullable=False, unique=True),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("captcha_mode", sa.String(length=10), nullable=False, server_default="math"),
        sa.Column("timeout", sa.Integer(), nullable=False, server_default="2"),
        sa.Column("failure_action", sa.String(length=10), nullable=False, server_default="kick"),
        sa.Column("max_attempts", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("created_at", sa.DateTime(), nullable=True),
        sa.Column("updated_at", sa.DateTime(), nullable=True),
    )

    op.create_table(
        "captcha_attempts",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.BigInteger(), nullable=False),
        sa.Column("chat_id", sa.BigInteger(), nullable=False),
        sa.Column("answer", sa.String(length=255), nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("message_id", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("refresh_count", sa.Integer(), nullable=True, server_default="0"),
        sa.Column("expires_at", sa.DateTime(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=True),
        sa.Column("updated_at", sa.DateTime(), nullable=True),
        sqlite_autoincrement=True,
    )
    op.create_index("idx_captcha_user_chat", "captcha_attempts", ["user_id", "chat_id"])
    op.create_index("idx_captcha_expires_at", "captcha_attempts", ["expires_at"])

    op.create_table(
        "stored_messages",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.BigInteger(), nullable=False),
        sa.Column("chat_id", sa.BigInteger(), nullable=False),
        sa.Column("message_type", sa.Integer(), nullable=False),
        sa.Column("content", sa.Text(), nullable=True),
        sa.Column("file_id", sa.String(), nullable=True),
        sa.Column("caption", sa.Text(), nullable=True),
        sa.Column("attempt_id", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=True),
    )
    op.create_index("idx_stored_user_chat", "stored_messages", ["user_id", "chat_id"])
    op.create_index("idx_stored_attempt", "stored_messages", ["attempt_id"])

    op.create_table(
        "captcha_muted_users",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.BigInteger(), nullable=False),
        sa.Column("chat_id", sa.BigInteger(), nullable=False),
        sa.Column("unmute_at", sa.DateTime(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=True),
        sqlite_autoincrement=True,
    )
    op.create_index("idx_captcha_muted_user_chat", "captcha_muted_users", ["user_id", "chat_id"])
    op.create_index("idx_captcha_unmute_at", "captcha_muted_users", ["unmute_at"])


def downgrade() -> None:
    op.drop_index("idx_captcha_unmute_at", table_name="captcha_muted_users")
    op.drop_index("idx_captcha_muted_user_chat", table_name="captcha_muted_users")
    op.drop_table("captcha_muted_users")

    op.drop_index("idx_stored_attempt", table_name="stored_messages")
    op.drop_index("idx_stored_user_chat", table_name="stored_messages")
    op.drop_table("stored_messages")

    op.drop_index("idx_captcha_expires_at", table_name="captcha_attempts")
    op.drop_index("idx_captcha_user_chat", table_name="captcha_attempts")
    op.drop_table("captcha_attempts")

    op.drop_table("captcha_settings")
