"""create cluster registry, failover, credential, federation and audit tables

Revision ID: 0001_control_core
Revises:
Create Date: 2026-10-19
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0001_control_core"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    ]


def upgrade() -> None:
    # Cluster registry: clusters and their Postgres nodes.
    op.create_table(
        "clusters",
        sa.Column("id", sa.String(), primary_key=True, nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        *_timestamps(),
    )
    op.create_table(
        "nodes",
        sa.Column("id", sa.String(), primary_key=True, nullable=False),
        sa.Column("cluster_id", sa.String(), sa.ForeignKey("clusters.id"), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("host", sa.String(), nullable=False),
        sa.Column("port", sa.Integer(), nullable=False, server_default=sa.text("5432")),
        sa.Column("role", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False, server_default="ONLINE"),
        sa.Column("connection_string", sa.Text(), nullable=True),
        sa.Column("replication_slot", sa.String(), nullable=True),
        sa.Column("ssl", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        *_timestamps(),
    )
    op.create_index("ix_nodes_cluster_id", "nodes", ["cluster_id"], unique=False)
    op.create_index("ix_nodes_cluster_role", "nodes", ["cluster_id", "role"], unique=False)

    op.create_table(
        "node_lifecycle_events",
        sa.Column("id", sa.String(), primary_key=True, nullable=False),
        sa.Column("node_id", sa.String(), nullable=False),
        sa.Column("cluster_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("from_status", sa.String(), nullable=True),
        sa.Column("to_status", sa.String(), nullable=True),
        sa.Column("details_json", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_node_lifecycle_events_node_id", "node_lifecycle_events", ["node_id"], unique=False)
    op.create_index("ix_node_lifecycle_events_cluster_id", "node_lifecycle_events", ["cluster_id"], unique=False)

    # Failover operations double as the durable job record for the worker.
    op.create_table(
        "failover_operations",
        sa.Column("id", sa.String(), primary_key=True, nullable=False),
        sa.Column("cluster_id", sa.String(), sa.ForeignKey("clusters.id"), nullable=False),
        sa.Column("source_node_id", sa.String(), sa.ForeignKey("nodes.id"), nullable=False),
        sa.Column("target_node_id", sa.String(), sa.ForeignKey("nodes.id"), nullable=False),
        sa.Column("type", sa.String(), nullable=False, server_default="PLANNED"),
        sa.Column("status", sa.String(), nullable=False, server_default="PENDING"),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("pre_checks_json", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("steps_json", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("initiated_by", sa.String(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("last_completed_step", sa.String(), nullable=True),
        sa.Column("job_id", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("rolled_back_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_failover_operations_cluster_id", "failover_operations", ["cluster_id"], unique=False)
    op.create_index(
        "ix_failover_operations_cluster_status",
        "failover_operations",
        ["cluster_id", "status"],
        unique=False,
    )

    # Managed superuser credential with bounded password history.
    op.create_table(
        "superuser_credentials",
        sa.Column("id", sa.String(), primary_key=True, nullable=False),
        sa.Column("username", sa.String(), nullable=False),
        sa.Column("current_password", sa.Text(), nullable=False),
        sa.Column("password_history", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("rotation_interval_days", sa.Integer(), nullable=False, server_default=sa.text("45")),
        sa.Column("last_rotated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("next_rotation_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(), nullable=False, server_default="ACTIVE"),
        *_timestamps(),
    )
    op.create_table(
        "credential_propagations",
        sa.Column("id", sa.String(), primary_key=True, nullable=False),
        sa.Column("credential_id", sa.String(), sa.ForeignKey("superuser_credentials.id"), nullable=False),
        sa.Column("node_id", sa.String(), sa.ForeignKey("nodes.id"), nullable=False),
        sa.Column("cluster_id", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False, server_default="PENDING"),
        sa.Column("last_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("success_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("password_used", sa.String(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("credential_id", "node_id", name="uq_credential_propagations_credential_node"),
    )
    op.create_index(
        "ix_credential_propagations_credential_id", "credential_propagations", ["credential_id"], unique=False
    )
    op.create_index("ix_credential_propagations_node_id", "credential_propagations", ["node_id"], unique=False)
    op.create_index(
        "ix_credential_propagations_cluster_id", "credential_propagations", ["cluster_id"], unique=False
    )
    op.create_table(
        "credential_alerts",
        sa.Column("id", sa.String(), primary_key=True, nullable=False),
        sa.Column("node_id", sa.String(), nullable=False),
        sa.Column("cluster_id", sa.String(), nullable=False),
        sa.Column("alert_type", sa.String(), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("resolved", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resolved_by", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_credential_alerts_node_id", "credential_alerts", ["node_id"], unique=False)
    op.create_index("ix_credential_alerts_cluster_id", "credential_alerts", ["cluster_id"], unique=False)
    op.create_index(
        "ix_credential_alerts_node_type_resolved",
        "credential_alerts",
        ["node_id", "alert_type", "resolved"],
        unique=False,
    )

    # Federation: the singleton local identity, known peers, requests and sync history.
    op.create_table(
        "control_plane_identity",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("instance_id", sa.String(), nullable=False, unique=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("domain", sa.String(), nullable=False),
        sa.Column("role", sa.String(), nullable=False, server_default="STANDALONE"),
        sa.Column("principle_id", sa.String(), nullable=True),
        sa.Column("api_key", sa.String(), nullable=False),
        sa.Column("epoch", sa.Integer(), nullable=False, server_default=sa.text("1")),
        *_timestamps(),
    )
    op.create_table(
        "federated_nodes",
        sa.Column("id", sa.String(), primary_key=True, nullable=False),
        sa.Column("instance_id", sa.String(), nullable=False, unique=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("domain", sa.String(), nullable=False),
        sa.Column("role", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False, server_default="PENDING"),
        sa.Column("sync_enabled", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("api_key", sa.String(), nullable=True),
        sa.Column("last_heartbeat", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_sync_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("promotion_request_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("promotion_request_by", sa.String(), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_federated_nodes_domain", "federated_nodes", ["domain"], unique=False)
    op.create_table(
        "federation_requests",
        sa.Column("id", sa.String(), primary_key=True, nullable=False),
        sa.Column("from_instance_id", sa.String(), nullable=False),
        sa.Column("from_instance_name", sa.String(), nullable=False),
        sa.Column("from_instance_domain", sa.String(), nullable=False),
        sa.Column("to_instance_id", sa.String(), nullable=True),
        sa.Column("request_type", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False, server_default="PENDING"),
        sa.Column("message", sa.Text(), nullable=True),
        sa.Column("api_key", sa.String(), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("node_id", sa.String(), nullable=True),
        sa.Column("epoch", sa.Integer(), nullable=True),
        sa.Column("responded_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("responded_by", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index(
        "ix_federation_requests_from_instance_id", "federation_requests", ["from_instance_id"], unique=False
    )
    op.create_index(
        "ix_federation_requests_type_status", "federation_requests", ["request_type", "status"], unique=False
    )
    op.create_table(
        "sync_logs",
        sa.Column("id", sa.String(), primary_key=True, nullable=False),
        sa.Column("node_id", sa.String(), sa.ForeignKey("federated_nodes.id"), nullable=False),
        sa.Column("direction", sa.String(), nullable=False),
        sa.Column("entity_type", sa.String(), nullable=False, server_default="FULL"),
        sa.Column("status", sa.String(), nullable=False, server_default="IN_PROGRESS"),
        sa.Column("entity_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_sync_logs_node_id", "sync_logs", ["node_id"], unique=False)

    # Append-only audit trail; secrets are redacted before insert.
    op.create_table(
        "audit_events",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("actor_id", sa.String(), nullable=True),
        sa.Column("actor_role", sa.String(), nullable=True),
        sa.Column("entity_type", sa.String(), nullable=False),
        sa.Column("entity_id", sa.String(), nullable=True),
        sa.Column("action", sa.String(), nullable=False),
        sa.Column("outcome", sa.String(), nullable=False),
        sa.Column("before_state", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("after_state", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("request_id", sa.String(), nullable=True),
        sa.Column("error_code", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_audit_events_occurred_at", "audit_events", ["occurred_at"], unique=False)
    op.create_index("ix_audit_events_entity_type", "audit_events", ["entity_type"], unique=False)
    op.create_index("ix_audit_events_entity_id", "audit_events", ["entity_id"], unique=False)
    op.create_index("ix_audit_events_action", "audit_events", ["action"], unique=False)
    op.create_index("ix_audit_events_request_id", "audit_events", ["request_id"], unique=False)


def downgrade() -> None:
    op.drop_table("audit_events")
    op.drop_table("sync_logs")
    op.drop_table("federation_requests")
    op.drop_table("federated_nodes")
    op.drop_table("control_plane_identity")
    op.drop_table("credential_alerts")
    op.drop_table("credential_propagations")
    op.drop_table("superuser_credentials")
    op.drop_table("failover_operations")
    op.drop_table("node_lifecycle_events")
    op.drop_table("nodes")
    op.drop_table("clusters")
