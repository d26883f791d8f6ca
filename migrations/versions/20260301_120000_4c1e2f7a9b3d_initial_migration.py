"""initial_migration

Revision ID: 4c1e2f7a9b3d
Revises:
Create Date: 2026-03-01 12:00:00.000000

"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "4c1e2f7a9b3d"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    ]


def upgrade() -> None:
    """Upgrade schema."""
    op.create_table(
        "email_accounts",
        sa.Column("id", sa.BigInteger(), nullable=False),
        sa.Column("uuid", sa.UUID(), nullable=False),
        *_timestamps(),
        sa.Column("user_id", sa.String(length=255), nullable=False),
        sa.Column("account_name", sa.String(length=255), nullable=False),
        sa.Column("email_address", sa.String(length=320), nullable=False),
        sa.Column("provider", sa.String(length=50), nullable=False),
        sa.Column("access_token", sa.Text(), nullable=True),
        sa.Column("refresh_token", sa.Text(), nullable=True),
        sa.Column("token_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("imap_host", sa.String(length=255), nullable=True),
        sa.Column("imap_port", sa.Integer(), nullable=True),
        sa.Column("imap_secure", sa.Boolean(), server_default=sa.true(), nullable=False),
        sa.Column("smtp_host", sa.String(length=255), nullable=True),
        sa.Column("smtp_port", sa.Integer(), nullable=True),
        sa.Column("smtp_secure", sa.Boolean(), server_default=sa.true(), nullable=False),
        sa.Column("username", sa.String(length=320), nullable=True),
        sa.Column("password", sa.Text(), nullable=True),
        sa.Column("is_default", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("is_active", sa.Boolean(), server_default=sa.true(), nullable=False),
        sa.Column("sync_enabled", sa.Boolean(), server_default=sa.true(), nullable=False),
        sa.Column("sync_frequency_seconds", sa.Integer(), server_default="15", nullable=False),
        sa.Column("last_sync_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "sync_cursor",
            sa.Text(),
            nullable=True,
            comment="historyId for gmail, highest UID for imap, delta link for outlook",
        ),
        sa.Column("inbox_folder", sa.String(length=255), server_default="INBOX", nullable=False),
        sa.Column("sent_folder", sa.String(length=255), server_default="SENT", nullable=False),
        sa.Column("drafts_folder", sa.String(length=255), server_default="DRAFTS", nullable=False),
        sa.Column("trash_folder", sa.String(length=255), server_default="TRASH", nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("user_id", "email_address", name="uq_email_account_user_address"),
    )
    op.create_index(op.f("ix_email_accounts_user_id"), "email_accounts", ["user_id"], unique=False)
    op.create_index(op.f("ix_email_accounts_uuid"), "email_accounts", ["uuid"], unique=True)

    op.create_table(
        "email_threads",
        sa.Column("id", sa.BigInteger(), nullable=False),
        sa.Column("uuid", sa.UUID(), nullable=False),
        *_timestamps(),
        sa.Column("user_id", sa.String(length=255), nullable=False),
        sa.Column("subject", sa.Text(), server_default="", nullable=False),
        sa.Column("normalized_subject", sa.Text(), server_default="", nullable=False),
        sa.Column(
            "participant_emails",
            postgresql.JSONB(astext_type=sa.Text()),
            server_default=sa.text("'[]'"),
            nullable=False,
        ),
        sa.Column("last_message_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("message_count", sa.Integer(), server_default="0", nullable=False),
        sa.Column("labels", postgresql.JSONB(astext_type=sa.Text()), server_default=sa.text("'[]'"), nullable=False),
        sa.Column("is_archived", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_email_threads_user_id"), "email_threads", ["user_id"], unique=False)
    op.create_index(op.f("ix_email_threads_uuid"), "email_threads", ["uuid"], unique=True)
    op.create_index("ix_email_threads_user_subject", "email_threads", ["user_id", "normalized_subject"], unique=False)

    op.create_table(
        "email_messages",
        sa.Column("id", sa.BigInteger(), nullable=False),
        sa.Column("uuid", sa.UUID(), nullable=False),
        *_timestamps(),
        sa.Column("thread_id", sa.BigInteger(), nullable=False),
        sa.Column("email_account_id", sa.BigInteger(), nullable=True),
        sa.Column("user_id", sa.String(length=255), nullable=False),
        sa.Column("external_message_id", sa.String(length=255), nullable=True),
        sa.Column("provider_thread_id", sa.String(length=255), nullable=True),
        sa.Column("rfc_message_id", sa.String(length=998), nullable=True),
        sa.Column("from_email", sa.String(length=320), server_default="", nullable=False),
        sa.Column("to_emails", postgresql.JSONB(astext_type=sa.Text()), server_default=sa.text("'[]'"), nullable=False),
        sa.Column("cc_emails", postgresql.JSONB(astext_type=sa.Text()), server_default=sa.text("'[]'"), nullable=False),
        sa.Column(
            "bcc_emails", postgresql.JSONB(astext_type=sa.Text()), server_default=sa.text("'[]'"), nullable=False
        ),
        sa.Column("subject", sa.Text(), server_default="", nullable=False),
        sa.Column("html_body", sa.Text(), nullable=True),
        sa.Column("text_body", sa.Text(), nullable=True),
        sa.Column("message_type", sa.String(length=50), nullable=False),
        sa.Column("is_read", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("is_starred", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("is_important", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("external_folder", sa.String(length=255), nullable=True),
        sa.Column(
            "needs_reconciliation",
            sa.Boolean(),
            server_default=sa.false(),
            nullable=False,
            comment="Send was interrupted; confirm with the provider",
        ),
        sa.ForeignKeyConstraint(["email_account_id"], ["email_accounts.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["thread_id"], ["email_threads.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("email_account_id", "external_message_id", name="uq_email_message_account_external_id"),
    )
    op.create_index(op.f("ix_email_messages_email_account_id"), "email_messages", ["email_account_id"], unique=False)
    op.create_index(op.f("ix_email_messages_rfc_message_id"), "email_messages", ["rfc_message_id"], unique=False)
    op.create_index(op.f("ix_email_messages_thread_id"), "email_messages", ["thread_id"], unique=False)
    op.create_index(op.f("ix_email_messages_user_id"), "email_messages", ["user_id"], unique=False)
    op.create_index(op.f("ix_email_messages_uuid"), "email_messages", ["uuid"], unique=True)

    op.create_table(
        "email_attachments",
        sa.Column("id", sa.BigInteger(), nullable=False),
        sa.Column("uuid", sa.UUID(), nullable=False),
        *_timestamps(),
        sa.Column("message_id", sa.BigInteger(), nullable=False),
        sa.Column("file_name", sa.String(length=255), nullable=False),
        sa.Column("file_size", sa.Integer(), server_default="0", nullable=False),
        sa.Column("mime_type", sa.String(length=255), server_default="application/octet-stream", nullable=False),
        sa.Column("external_attachment_id", sa.String(length=255), nullable=True),
        sa.Column("content", sa.LargeBinary(), nullable=True),
        sa.ForeignKeyConstraint(["message_id"], ["email_messages.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_email_attachments_message_id"), "email_attachments", ["message_id"], unique=False)
    op.create_index(op.f("ix_email_attachments_uuid"), "email_attachments", ["uuid"], unique=True)

    op.create_table(
        "rate_limit_windows",
        sa.Column("id", sa.BigInteger(), nullable=False),
        *_timestamps(),
        sa.Column("email_account_id", sa.BigInteger(), nullable=False),
        sa.Column("window", sa.String(length=50), nullable=False),
        sa.Column("count", sa.Integer(), server_default="0", nullable=False),
        sa.Column("window_start", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["email_account_id"], ["email_accounts.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("email_account_id", "window", name="uq_rate_limit_account_window"),
    )
    op.create_index(
        op.f("ix_rate_limit_windows_email_account_id"), "rate_limit_windows", ["email_account_id"], unique=False
    )

    op.create_table(
        "sync_health",
        sa.Column("id", sa.BigInteger(), nullable=False),
        sa.Column("email_account_id", sa.BigInteger(), nullable=False),
        sa.Column("last_success_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_failure_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("consecutive_failures", sa.Integer(), server_default="0", nullable=False),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("is_flagged", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.ForeignKeyConstraint(["email_account_id"], ["email_accounts.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("email_account_id"),
    )


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_table("sync_health")
    op.drop_index(op.f("ix_rate_limit_windows_email_account_id"), table_name="rate_limit_windows")
    op.drop_table("rate_limit_windows")
    op.drop_index(op.f("ix_email_attachments_uuid"), table_name="email_attachments")
    op.drop_index(op.f("ix_email_attachments_message_id"), table_name="email_attachments")
    op.drop_table("email_attachments")
    op.drop_index(op.f("ix_email_messages_uuid"), table_name="email_messages")
    op.drop_index(op.f("ix_email_messages_user_id"), table_name="email_messages")
    op.drop_index(op.f("ix_email_messages_thread_id"), table_name="email_messages")
    op.drop_index(op.f("ix_email_messages_rfc_message_id"), table_name="email_messages")
    op.drop_index(op.f("ix_email_messages_email_account_id"), table_name="email_messages")
    op.drop_table("email_messages")
    op.drop_index("ix_email_threads_user_subject", table_name="email_threads")
    op.drop_index(op.f("ix_email_threads_uuid"), table_name="email_threads")
    op.drop_index(op.f("ix_email_threads_user_id"), table_name="email_threads")
    op.drop_table("email_threads")
    op.drop_index(op.f("ix_email_accounts_uuid"), table_name="email_accounts")
    op.drop_index(op.f("ix_email_accounts_user_id"), table_name="email_accounts")
    op.drop_table("email_accounts")
