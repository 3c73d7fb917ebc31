"""Initial attendance integrity schema

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-19 00:00:00
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "0001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

device_trust_level = postgresql.ENUM("UNTRUSTED", "TRUSTED", name="device_trust_level", create_type=False)
attendance_kind = postgresql.ENUM("CHECK_IN", "CHECK_OUT", name="attendance_kind", create_type=False)
capture_method = postgresql.ENUM("camera", "upload", name="capture_method", create_type=False)
attendance_event_status = postgresql.ENUM(
    "ACCEPTED",
    "PENDING_REVIEW",
    "REJECTED",
    name="attendance_event_status",
    create_type=False,
)
anomaly_kind = postgresql.ENUM(
    "FACE_VERIFICATION_FAIL",
    "UNUSUAL_HOURS",
    "DUPLICATE_EVENT",
    "MISSING_CHECKOUT",
    "DEVICE_CHURN",
    name="anomaly_kind",
    create_type=False,
)
anomaly_severity = postgresql.ENUM("LOW", "MEDIUM", "HIGH", "CRITICAL", name="anomaly_severity", create_type=False)
anomaly_status = postgresql.ENUM(
    "PENDING",
    "RESOLVED",
    "FALSE_POSITIVE",
    "IGNORED",
    name="anomaly_status",
    create_type=False,
)
audit_severity = postgresql.ENUM("INFO", "WARNING", "ERROR", "CRITICAL", name="audit_severity", create_type=False)
notification_priority = postgresql.ENUM("NORMAL", "HIGH", "URGENT", name="notification_priority", create_type=False)

ALL_ENUMS = (
    device_trust_level,
    attendance_kind,
    capture_method,
    attendance_event_status,
    anomaly_kind,
    anomaly_severity,
    anomaly_status,
    audit_severity,
    notification_priority,
)


def upgrade() -> None:
    bind = op.get_bind()
    for enum_type in ALL_ENUMS:
        enum_type.create(bind, checkfirst=True)

    op.create_table(
        "user_accounts",
        sa.Column("id", sa.String(length=64), primary_key=True, nullable=False),
        sa.Column("full_name", sa.String(length=255), nullable=True),
        sa.Column("role", sa.String(length=50), nullable=False, server_default="EMPLOYEE"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("reference_photo", sa.Text(), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
    )
    op.create_index("ix_user_accounts_role", "user_accounts", ["role"], unique=False)

    op.create_table(
        "device_fingerprints",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("owner_user_id", sa.String(length=64), nullable=False),
        sa.Column("fingerprint_hash", sa.String(length=64), nullable=False),
        sa.Column("payload", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("platform", sa.String(length=255), nullable=True),
        sa.Column("browser", sa.String(length=255), nullable=True),
        sa.Column("user_agent", sa.String(length=1024), nullable=True),
        sa.Column("trust_level", device_trust_level, nullable=False, server_default="UNTRUSTED"),
        sa.Column("first_seen_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_seen_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_ip", sa.String(length=128), nullable=True),
        sa.UniqueConstraint("owner_user_id", "fingerprint_hash", name="uq_device_fingerprints_owner_hash"),
    )
    op.create_index("ix_device_fingerprints_owner_user_id", "device_fingerprints", ["owner_user_id"], unique=False)
    op.create_index("ix_device_fingerprints_last_seen_at", "device_fingerprints", ["last_seen_at"], unique=False)

    op.create_table(
        "attendance_events",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("subject_user_id", sa.String(length=64), nullable=False),
        sa.Column("kind", attendance_kind, nullable=False),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("captured_photo", sa.Text(), nullable=True),
        sa.Column("capture_method", capture_method, nullable=True),
        sa.Column("device_fingerprint_id", sa.Integer(), nullable=True),
        sa.Column("source_ip", sa.String(length=128), nullable=True),
        sa.Column("lat", sa.Float(), nullable=True),
        sa.Column("lng", sa.Float(), nullable=True),
        sa.Column("accuracy_m", sa.Float(), nullable=True),
        sa.Column("face_verified", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("verification_score", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("status", attendance_event_status, nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
    )
    op.create_index("ix_attendance_events_subject_user_id", "attendance_events", ["subject_user_id"], unique=False)
    op.create_index("ix_attendance_events_occurred_at", "attendance_events", ["occurred_at"], unique=False)
    op.create_index(
        "ix_attendance_events_subject_occurred",
        "attendance_events",
        ["subject_user_id", "occurred_at"],
        unique=False,
    )

    op.create_table(
        "anomalies",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("kind", anomaly_kind, nullable=False),
        sa.Column("severity", anomaly_severity, nullable=False),
        sa.Column("subject_entity_type", sa.String(length=64), nullable=False),
        sa.Column("subject_entity_id", sa.String(length=64), nullable=False),
        sa.Column("attendance_event_id", sa.Integer(), nullable=True),
        sa.Column("subject_user_id", sa.String(length=64), nullable=True),
        sa.Column("description", sa.String(length=1000), nullable=False),
        sa.Column("context", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("status", anomaly_status, nullable=False, server_default="PENDING"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("resolved_by", sa.String(length=64), nullable=True),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resolution_note", sa.String(length=2000), nullable=True),
        sa.ForeignKeyConstraint(["attendance_event_id"], ["attendance_events.id"]),
    )
    op.create_index("ix_anomalies_severity", "anomalies", ["severity"], unique=False)
    op.create_index("ix_anomalies_status", "anomalies", ["status"], unique=False)
    op.create_index("ix_anomalies_attendance_event_id", "anomalies", ["attendance_event_id"], unique=False)
    op.create_index("ix_anomalies_subject_user_id", "anomalies", ["subject_user_id"], unique=False)

    op.create_table(
        "audit_entries",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("actor_user_id", sa.String(length=64), nullable=True),
        sa.Column("action", sa.String(length=100), nullable=False),
        sa.Column("entity_type", sa.String(length=64), nullable=False),
        sa.Column("entity_id", sa.String(length=64), nullable=True),
        sa.Column("severity", audit_severity, nullable=False, server_default="INFO"),
        sa.Column("metadata", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_audit_entries_actor_user_id", "audit_entries", ["actor_user_id"], unique=False)
    op.create_index("ix_audit_entries_action", "audit_entries", ["action"], unique=False)
    op.create_index("ix_audit_entries_created_at", "audit_entries", ["created_at"], unique=False)

    op.create_table(
        "user_notifications",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("recipient_user_id", sa.String(length=64), nullable=False),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("body", sa.String(length=2000), nullable=False),
        sa.Column("priority", notification_priority, nullable=False, server_default="NORMAL"),
        sa.Column("metadata", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("is_read", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("read_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index(
        "ix_user_notifications_recipient_user_id",
        "user_notifications",
        ["recipient_user_id"],
        unique=False,
    )

    op.create_table(
        "push_subscriptions",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("endpoint", sa.Text(), nullable=False),
        sa.Column("p256dh", sa.Text(), nullable=False),
        sa.Column("auth", sa.Text(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("user_agent", sa.String(length=1024), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("last_seen_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("endpoint", name="uq_push_subscriptions_endpoint"),
    )
    op.create_index("ix_push_subscriptions_user_id", "push_subscriptions", ["user_id"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_push_subscriptions_user_id", table_name="push_subscriptions")
    op.drop_table("push_subscriptions")
    op.drop_index("ix_user_notifications_recipient_user_id", table_name="user_notifications")
    op.drop_table("user_notifications")
    op.drop_index("ix_audit_entries_created_at", table_name="audit_entries")
    op.drop_index("ix_audit_entries_action", table_name="audit_entries")
    op.drop_index("ix_audit_entries_actor_user_id", table_name="audit_entries")
    op.drop_table("audit_entries")
    op.drop_index("ix_anomalies_subject_user_id", table_name="anomalies")
    op.drop_index("ix_anomalies_attendance_event_id", table_name="anomalies")
    op.drop_index("ix_anomalies_status", table_name="anomalies")
    op.drop_index("ix_anomalies_severity", table_name="anomalies")
    op.drop_table("anomalies")
    op.drop_index("ix_attendance_events_subject_occurred", table_name="attendance_events")
    op.drop_index("ix_attendance_events_occurred_at", table_name="attendance_events")
    op.drop_index("ix_attendance_events_subject_user_id", table_name="attendance_events")
    op.drop_table("attendance_events")
    op.drop_index("ix_device_fingerprints_last_seen_at", table_name="device_fingerprints")
    op.drop_index("ix_device_fingerprints_owner_user_id", table_name="device_fingerprints")
    op.drop_table("device_fingerprints")
    op.drop_index("ix_user_accounts_role", table_name="user_accounts")
    op.drop_table("user_accounts")

    bind = op.get_bind()
    for enum_type in reversed(ALL_ENUMS):
        enum_type.drop(bind, checkfirst=True)
