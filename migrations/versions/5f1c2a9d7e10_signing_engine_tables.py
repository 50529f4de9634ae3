"""signing_engine_tables

Create the document aggregate tables (documents, document_versions,
document_recipients, signing_events) and the keyed collections beside it
(signed_fields, audit_logs, email_logs).

Revision ID: 5f1c2a9d7e10
Revises:
Create Date: 2026-10-19 09:30:00.000000
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect as sa_inspect


# revision identifiers, used by Alembic.
revision = "5f1c2a9d7e10"
down_revision = None
branch_labels = None
depends_on = None

_DOCUMENT_STATUSES = (
    "draft", "sent", "in_progress", "completed", "rejected",
    "expired", "voided", "cancelled", "delivery_failed",
)
_RECIPIENT_STATUSES = (
    "pending", "sent", "viewed", "signed", "approved",
    "rejected", "expired", "delivery_failed",
)
_EVENT_ACTIONS = ("sent", "viewed", "signed", "approved", "rejected", "expired", "voided")


def _in_list(column, values):
    quoted = ", ".join(f"'{v}'" for v in values)
    return f"{column} IN ({quoted})"


def upgrade():
    bind = op.get_bind()
    inspector = sa_inspect(bind)
    existing_tables = set(inspector.get_table_names())

    if "documents" not in existing_tables:
        op.create_table(
            "documents",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("owner_id", sa.String(length=64), nullable=False),
            sa.Column("owner_email", sa.String(length=255), nullable=True),
            sa.Column("name", sa.String(length=255), nullable=False),
            sa.Column("original_file_name", sa.String(length=255), nullable=True),
            sa.Column("signing_mode", sa.String(length=20), nullable=False),
            sa.Column("current_version", sa.Integer(), nullable=False),
            sa.Column("status", sa.String(length=20), nullable=False),
            sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("finalized_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("derived_from_document_id", sa.String(length=36), nullable=True),
            sa.Column("derived_from_version", sa.Integer(), nullable=True),
            sa.Column("lock_version", sa.Integer(), nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint("id"),
            sa.CheckConstraint(_in_list("status", _DOCUMENT_STATUSES), name="ck_document_status"),
            sa.CheckConstraint(_in_list("signing_mode", ("sequential", "parallel")),
                               name="ck_document_signing_mode"),
        )
        op.create_index("ix_documents_owner_id", "documents", ["owner_id"])
        op.create_index("ix_documents_status", "documents", ["status"])
        op.create_index("ix_documents_deleted_at", "documents", ["deleted_at"])
        op.create_index("ix_documents_derived_from_document_id", "documents", ["derived_from_document_id"])
        op.create_index("ix_documents_owner_status", "documents", ["owner_id", "status"])

    if "document_versions" not in existing_tables:
        op.create_table(
            "document_versions",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("document_id", sa.String(length=36), nullable=False),
            sa.Column("version", sa.Integer(), nullable=False),
            sa.Column("label", sa.String(length=40), nullable=False),
            sa.Column("derived_from_version", sa.Integer(), nullable=True),
            sa.Column("hash", sa.String(length=128), nullable=False),
            sa.Column("hash_algo", sa.String(length=16), nullable=False),
            sa.Column("size", sa.BigInteger(), nullable=False),
            sa.Column("mime_type", sa.String(length=120), nullable=True),
            sa.Column("storage_bucket", sa.String(length=63), nullable=False),
            sa.Column("storage_key", sa.String(length=512), nullable=False),
            sa.Column("locked", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("fields", sa.JSON(), nullable=False),
            sa.Column("signed_by", sa.JSON(), nullable=False),
            sa.Column("change_log", sa.Text(), nullable=True),
            sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(["document_id"], ["documents.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("document_id", "version", name="uq_document_version"),
        )
        op.create_index("ix_document_versions_document_id", "document_versions", ["document_id"])

    if "document_recipients" not in existing_tables:
        op.create_table(
            "document_recipients",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("document_id", sa.String(length=36), nullable=False),
            sa.Column("recipient_id", sa.String(length=64), nullable=False),
            sa.Column("email", sa.String(length=255), nullable=False),
            sa.Column("name", sa.String(length=255), nullable=True),
            sa.Column("role", sa.String(length=20), nullable=False),
            sa.Column("signing_order", sa.Integer(), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=False),
            sa.Column("signing_token", sa.String(length=64), nullable=True),
            sa.Column("signed_version", sa.Integer(), nullable=True),
            sa.Column("capture_gps_location", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("viewed_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("signed_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("approved_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("rejected_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("expired_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("rejection_reason", sa.Text(), nullable=True),
            sa.Column("device", sa.JSON(), nullable=True),
            sa.Column("location", sa.JSON(), nullable=True),
            sa.Column("consent", sa.JSON(), nullable=True),
            sa.Column("network", sa.JSON(), nullable=True),
            sa.ForeignKeyConstraint(["document_id"], ["documents.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("document_id", "recipient_id", name="uq_document_recipient"),
            sa.CheckConstraint(_in_list("role", ("signer", "approver", "viewer")), name="ck_recipient_role"),
            sa.CheckConstraint(_in_list("status", _RECIPIENT_STATUSES), name="ck_recipient_status"),
        )
        op.create_index("ix_document_recipients_document_id", "document_recipients", ["document_id"])
        op.create_index("ix_document_recipients_signing_token", "document_recipients",
                        ["signing_token"], unique=True)

    if "signing_events" not in existing_tables:
        op.create_table(
            "signing_events",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("document_id", sa.String(length=36), nullable=False),
            sa.Column("sequence", sa.Integer(), nullable=False),
            sa.Column("recipient_id", sa.String(length=64), nullable=True),
            sa.Column("email", sa.String(length=255), nullable=True),
            sa.Column("role", sa.String(length=20), nullable=True),
            sa.Column("action", sa.String(length=20), nullable=False),
            sa.Column("signing_order", sa.Integer(), nullable=True),
            sa.Column("base_version", sa.Integer(), nullable=True),
            sa.Column("version", sa.Integer(), nullable=True),
            sa.Column("client_timestamp", sa.DateTime(timezone=True), nullable=True),
            sa.Column("server_timestamp", sa.DateTime(timezone=True), nullable=False),
            sa.Column("ip", sa.String(length=45), nullable=True),
            sa.Column("ip_unavailable_reason", sa.String(length=20), nullable=True),
            sa.Column("user_agent", sa.String(length=512), nullable=True),
            sa.Column("client", sa.JSON(), nullable=True),
            sa.Column("geo", sa.JSON(), nullable=True),
            sa.Column("consent", sa.JSON(), nullable=True),
            sa.Column("fields", sa.JSON(), nullable=False),
            sa.Column("fields_digest", sa.String(length=64), nullable=True),
            sa.Column("reason", sa.Text(), nullable=True),
            sa.ForeignKeyConstraint(["document_id"], ["documents.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("document_id", "sequence", name="uq_signing_event_sequence"),
            sa.CheckConstraint(_in_list("action", _EVENT_ACTIONS), name="ck_signing_event_action"),
        )
        op.create_index("ix_signing_events_document_id", "signing_events", ["document_id"])

    if "signed_fields" not in existing_tables:
        op.create_table(
            "signed_fields",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("document_id", sa.String(length=36), nullable=False),
            sa.Column("version", sa.Integer(), nullable=False),
            sa.Column("recipient_id", sa.String(length=64), nullable=False),
            sa.Column("field_id", sa.String(length=128), nullable=False),
            sa.Column("field_type", sa.String(length=40), nullable=True),
            sa.Column("value", sa.Text(), nullable=False),
            sa.Column("field_value_hash", sa.String(length=64), nullable=False),
            sa.Column("field_hash", sa.String(length=64), nullable=False),
            sa.Column("payload_hash", sa.String(length=64), nullable=False),
            sa.Column("signature_image_hash", sa.String(length=64), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("document_id", "version", "recipient_id", "field_id",
                                name="uq_signed_field_key"),
        )
        op.create_index("ix_signed_fields_document_id", "signed_fields", ["document_id"])
        op.create_index("ix_signed_fields_document_version", "signed_fields", ["document_id", "version"])

    if "audit_logs" not in existing_tables:
        op.create_table(
            "audit_logs",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("entity_type", sa.String(length=30), nullable=False),
            sa.Column("entity_id", sa.String(length=36), nullable=False),
            sa.Column("action", sa.String(length=60), nullable=False),
            sa.Column("actor", sa.String(length=150), nullable=False),
            sa.Column("ip", sa.String(length=45), nullable=True),
            sa.Column("diff_json", sa.Text(), nullable=True),
            sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("idx_audit_entity", "audit_logs", ["entity_type", "entity_id"])
        op.create_index("idx_audit_actor", "audit_logs", ["actor"])
        op.create_index("idx_audit_action", "audit_logs", ["action"])
        op.create_index("idx_audit_ts", "audit_logs", ["timestamp"])

    if "email_logs" not in existing_tables:
        op.create_table(
            "email_logs",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("recipient_email", sa.String(length=255), nullable=False),
            sa.Column("recipient_name", sa.String(length=255), nullable=True),
            sa.Column("subject", sa.String(length=500), nullable=False),
            sa.Column("template_name", sa.String(length=100), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=True),
            sa.Column("error_message", sa.Text(), nullable=True),
            sa.Column("document_id", sa.String(length=36), nullable=True),
            sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_email_logs_recipient_email", "email_logs", ["recipient_email"])
        op.create_index("ix_email_logs_document_id", "email_logs", ["document_id"])


def downgrade():
    bind = op.get_bind()
    inspector = sa_inspect(bind)
    existing_tables = set(inspector.get_table_names())

    for table in ("email_logs", "audit_logs", "signed_fields", "signing_events",
                  "document_recipients", "document_versions", "documents"):
        if table in existing_tables:
            op.drop_table(table)
