"""initial reportflow schema

Revision ID: 3c1e7a2b9d40
Revises:
Create Date: 2026-10-18

"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "3c1e7a2b9d40"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "identity_user",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True, nullable=False),
        *_timestamps(),
        sa.Column("email", sa.String(length=320), nullable=False),
        sa.Column("full_name", sa.String(length=200), nullable=True),
        sa.Column("password_hash", sa.String(length=200), nullable=False),
        sa.Column("role", sa.String(length=7), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
    )
    op.create_index("ix_identity_user_email", "identity_user", ["email"], unique=True)
    op.create_index("ix_identity_user_role", "identity_user", ["role"])

    op.create_table(
        "reports_report",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True, nullable=False),
        *_timestamps(),
        sa.Column("user_id", sa.Uuid(as_uuid=True), sa.ForeignKey("identity_user.id"), nullable=False),
        sa.Column("filename", sa.String(length=512), nullable=False),
        sa.Column("report_date", sa.Date(), nullable=False),
        sa.Column("total_amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("manager_comments", sa.Text(), nullable=True),
        sa.Column("rejection_reason", sa.Text(), nullable=True),
        sa.Column("submitted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("decided_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "decided_by_user_id",
            sa.Uuid(as_uuid=True),
            sa.ForeignKey("identity_user.id"),
            nullable=True,
        ),
    )
    op.create_index("ix_reports_report_user_id", "reports_report", ["user_id"])
    op.create_index("ix_reports_report_status", "reports_report", ["status"])

    op.create_table(
        "reports_report_file",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True, nullable=False),
        *_timestamps(),
        sa.Column(
            "report_id", sa.Uuid(as_uuid=True), sa.ForeignKey("reports_report.id"), nullable=False
        ),
        sa.Column(
            "uploader_id", sa.Uuid(as_uuid=True), sa.ForeignKey("identity_user.id"), nullable=False
        ),
        sa.Column("filename", sa.String(length=512), nullable=False),
        sa.Column("content_type", sa.String(length=200), nullable=True),
        sa.Column("byte_size", sa.Integer(), nullable=False),
        sa.Column("sha256", sa.String(length=64), nullable=False),
        sa.Column("storage_key", sa.String(length=1024), nullable=False),
        sa.Column("kind", sa.String(length=4), nullable=True),
        sa.Column("status", sa.String(length=10), nullable=False),
        sa.Column("matched_column", sa.String(length=200), nullable=True),
        sa.Column("amount_count", sa.Integer(), nullable=False),
        sa.Column("total_amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("error_code", sa.String(length=50), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("warning", sa.Text(), nullable=True),
        sa.UniqueConstraint("storage_key", name="uq_reports_report_file_storage_key"),
    )
    op.create_index("ix_reports_report_file_report_id", "reports_report_file", ["report_id"])
    op.create_index("ix_reports_report_file_sha256", "reports_report_file", ["sha256"])
    op.create_index("ix_reports_report_file_status", "reports_report_file", ["status"])

    op.create_table(
        "payments_payment",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True, nullable=False),
        *_timestamps(),
        sa.Column(
            "report_id", sa.Uuid(as_uuid=True), sa.ForeignKey("reports_report.id"), nullable=False
        ),
        sa.Column("user_id", sa.Uuid(as_uuid=True), sa.ForeignKey("identity_user.id"), nullable=False),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("remaining_amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("method", sa.String(length=11), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("transaction_id", sa.String(length=200), nullable=True),
    )
    op.create_index("ix_payments_payment_report_id", "payments_payment", ["report_id"], unique=True)
    op.create_index("ix_payments_payment_user_id", "payments_payment", ["user_id"])
    op.create_index("ix_payments_payment_status", "payments_payment", ["status"])

    op.create_table(
        "payments_payment_proof",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True, nullable=False),
        *_timestamps(),
        sa.Column(
            "payment_id", sa.Uuid(as_uuid=True), sa.ForeignKey("payments_payment.id"), nullable=False
        ),
        sa.Column(
            "report_id", sa.Uuid(as_uuid=True), sa.ForeignKey("reports_report.id"), nullable=False
        ),
        sa.Column("user_id", sa.Uuid(as_uuid=True), sa.ForeignKey("identity_user.id"), nullable=False),
        sa.Column("filename", sa.String(length=512), nullable=False),
        sa.Column("file_url", sa.String(length=1024), nullable=False),
        sa.Column("file_type", sa.String(length=4), nullable=False),
        sa.Column("content_type", sa.String(length=200), nullable=True),
        sa.Column("byte_size", sa.Integer(), nullable=False),
        sa.Column("sha256", sa.String(length=64), nullable=False),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("manager_comments", sa.Text(), nullable=True),
        sa.Column(
            "decided_by_user_id",
            sa.Uuid(as_uuid=True),
            sa.ForeignKey("identity_user.id"),
            nullable=True,
        ),
        sa.Column("decided_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("file_url", name="uq_payments_payment_proof_file_url"),
    )
    op.create_index(
        "ix_payments_payment_proof_payment_id", "payments_payment_proof", ["payment_id"]
    )
    op.create_index("ix_payments_payment_proof_report_id", "payments_payment_proof", ["report_id"])
    op.create_index("ix_payments_payment_proof_status", "payments_payment_proof", ["status"])

    op.create_table(
        "audit_history_entry",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("report_id", sa.Uuid(as_uuid=True), nullable=False),
        sa.Column("entity", sa.String(length=13), nullable=False),
        sa.Column("entity_id", sa.Uuid(as_uuid=True), nullable=False),
        sa.Column(
            "actor_user_id", sa.Uuid(as_uuid=True), sa.ForeignKey("identity_user.id"), nullable=True
        ),
        sa.Column("action", sa.String(length=50), nullable=False),
        sa.Column("previous_status", sa.String(length=50), nullable=True),
        sa.Column("new_status", sa.String(length=50), nullable=True),
        sa.Column("comments", sa.Text(), nullable=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_audit_history_entry_report_id", "audit_history_entry", ["report_id"])
    op.create_index("ix_audit_history_entry_entity_id", "audit_history_entry", ["entity_id"])
    op.create_index(
        "ix_audit_history_entry_actor_user_id", "audit_history_entry", ["actor_user_id"]
    )
    op.create_index("ix_audit_history_entry_action", "audit_history_entry", ["action"])

    op.create_table(
        "notifications_notification",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True, nullable=False),
        *_timestamps(),
        sa.Column("user_id", sa.Uuid(as_uuid=True), sa.ForeignKey("identity_user.id"), nullable=False),
        sa.Column("type", sa.String(length=22), nullable=False),
        sa.Column("title", sa.String(length=200), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("data_json", sa.JSON(), nullable=False),
        sa.Column("read", sa.Boolean(), nullable=False),
    )
    op.create_index(
        "ix_notifications_notification_user_id", "notifications_notification", ["user_id"]
    )
    op.create_index("ix_notifications_notification_type", "notifications_notification", ["type"])
    op.create_index("ix_notifications_notification_read", "notifications_notification", ["read"])


def downgrade() -> None:
    op.drop_table("notifications_notification")
    op.drop_table("audit_history_entry")
    op.drop_table("payments_payment_proof")
    op.drop_table("payments_payment")
    op.drop_table("reports_report_file")
    op.drop_table("reports_report")
    op.drop_table("identity_user")
