from __future__ import annotations

from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator


# JSONB on Postgres; plain JSON keeps the schema usable on SQLite test databases.
JSONType = JSON().with_variant(JSONB(), "postgresql")
# SQLite only autoincrements INTEGER primary keys.
BigIntId = BigInteger().with_variant(Integer(), "sqlite")


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC timestamps, including on backends that drop tzinfo."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is not None and value.tzinfo is not None:
            return value.astimezone(timezone.utc)
        return value

    def process_result_value(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid4().hex


class Base(DeclarativeBase):
    pass


class Cluster(Base):
    __tablename__ = "clusters"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utc_now, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=_utc_now, server_default=func.now(), onupdate=_utc_now
    )


class Node(Base):
    __tablename__ = "nodes"
    __table_args__ = (Index("ix_nodes_cluster_role", "cluster_id", "role"),)

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    cluster_id: Mapped[str] = mapped_column(String, ForeignKey("clusters.id"), index=True)
    name: Mapped[str] = mapped_column(String)
    host: Mapped[str] = mapped_column(String)
    port: Mapped[int] = mapped_column(Integer, default=5432)
    # PRIMARY | REPLICA
    role: Mapped[str] = mapped_column(String)
    # ONLINE | OFFLINE
    status: Mapped[str] = mapped_column(String, default="ONLINE")
    # Stored without the password; live auth uses the managed superuser credential.
    connection_string: Mapped[str | None] = mapped_column(Text, nullable=True)
    replication_slot: Mapped[str | None] = mapped_column(String, nullable=True)
    ssl: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utc_now, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=_utc_now, server_default=func.now(), onupdate=_utc_now
    )


class NodeLifecycleEvent(Base):
    __tablename__ = "node_lifecycle_events"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    node_id: Mapped[str] = mapped_column(String, index=True)
    cluster_id: Mapped[str] = mapped_column(String, index=True)
    # DEMOTED | PROMOTED
    event_type: Mapped[str] = mapped_column(String)
    from_status: Mapped[str | None] = mapped_column(String, nullable=True)
    to_status: Mapped[str | None] = mapped_column(String, nullable=True)
    details_json: Mapped[dict[str, Any] | None] = mapped_column(JSONType, default=dict)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utc_now, server_default=func.now())


class FailoverOperation(Base):
    __tablename__ = "failover_operations"
    __table_args__ = (Index("ix_failover_operations_cluster_status", "cluster_id", "status"),)

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    cluster_id: Mapped[str] = mapped_column(String, ForeignKey("clusters.id"), index=True)
    source_node_id: Mapped[str] = mapped_column(String, ForeignKey("nodes.id"))
    target_node_id: Mapped[str] = mapped_column(String, ForeignKey("nodes.id"))
    # PLANNED | UNPLANNED
    type: Mapped[str] = mapped_column(String, default="PLANNED")
    status: Mapped[str] = mapped_column(String, default="PENDING")
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    pre_checks_json: Mapped[list[dict[str, Any]]] = mapped_column(JSONType, default=list)
    # Append-only; each entry is {timestamp, message}.
    steps_json: Mapped[list[dict[str, Any]]] = mapped_column(JSONType, default=list)
    initiated_by: Mapped[str | None] = mapped_column(String, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Durable job record: the worker resumes after the last completed step.
    last_completed_step: Mapped[str | None] = mapped_column(String, nullable=True)
    job_id: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utc_now, server_default=func.now())
    started_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    rolled_back_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=_utc_now, server_default=func.now(), onupdate=_utc_now
    )


class SuperuserCredential(Base):
    __tablename__ = "superuser_credentials"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    username: Mapped[str] = mapped_column(String)
    current_password: Mapped[str] = mapped_column(Text)
    # Newest first, capped by credential_history_size.
    password_history: Mapped[list[str]] = mapped_column(JSONType, default=list)
    rotation_interval_days: Mapped[int] = mapped_column(Integer, default=45)
    last_rotated_at: Mapped[datetime] = mapped_column(UTCDateTime)
    next_rotation_at: Mapped[datetime] = mapped_column(UTCDateTime)
    # ACTIVE | SYNCING | NEEDS_REENROLLMENT
    status: Mapped[str] = mapped_column(String, default="ACTIVE")
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utc_now, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=_utc_now, server_default=func.now(), onupdate=_utc_now
    )


class CredentialPropagation(Base):
    __tablename__ = "credential_propagations"
    __table_args__ = (
        UniqueConstraint("credential_id", "node_id", name="uq_credential_propagations_credential_node"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    credential_id: Mapped[str] = mapped_column(
        String, ForeignKey("superuser_credentials.id"), index=True
    )
    node_id: Mapped[str] = mapped_column(String, ForeignKey("nodes.id"), index=True)
    cluster_id: Mapped[str] = mapped_column(String, index=True)
    # PENDING | SUCCESS | FAILED | NEEDS_REENROLLMENT
    status: Mapped[str] = mapped_column(String, default="PENDING")
    last_attempt_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    success_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    # "current" or "history_{i}"; never the password itself.
    password_used: Mapped[str | None] = mapped_column(String, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=_utc_now, server_default=func.now(), onupdate=_utc_now
    )


class CredentialAlert(Base):
    __tablename__ = "credential_alerts"
    __table_args__ = (Index("ix_credential_alerts_node_type_resolved", "node_id", "alert_type", "resolved"),)

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    node_id: Mapped[str] = mapped_column(String, index=True)
    cluster_id: Mapped[str] = mapped_column(String, index=True)
    alert_type: Mapped[str] = mapped_column(String)
    message: Mapped[str] = mapped_column(Text)
    resolved: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    resolved_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    resolved_by: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utc_now, server_default=func.now())


class ControlPlaneIdentity(Base):
    __tablename__ = "control_plane_identity"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    instance_id: Mapped[str] = mapped_column(String, unique=True)
    name: Mapped[str] = mapped_column(String)
    domain: Mapped[str] = mapped_column(String)
    # PRINCIPLE | PARTNER | STANDALONE
    role: Mapped[str] = mapped_column(String, default="STANDALONE")
    principle_id: Mapped[str | None] = mapped_column(String, nullable=True)
    api_key: Mapped[str] = mapped_column(String)
    # Incremented on every role transition to fence stale promotions.
    epoch: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utc_now, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=_utc_now, server_default=func.now(), onupdate=_utc_now
    )


class FederatedNode(Base):
    __tablename__ = "federated_nodes"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    instance_id: Mapped[str] = mapped_column(String, unique=True)
    name: Mapped[str] = mapped_column(String)
    domain: Mapped[str] = mapped_column(String, index=True)
    # Peer role relative to this instance: PRINCIPLE | PARTNER
    role: Mapped[str] = mapped_column(String)
    # PENDING | CONNECTED | SYNCING | DISCONNECTED
    status: Mapped[str] = mapped_column(String, default="PENDING")
    sync_enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    api_key: Mapped[str | None] = mapped_column(String, nullable=True)
    last_heartbeat: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    last_sync_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    promotion_request_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    promotion_request_by: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utc_now, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=_utc_now, server_default=func.now(), onupdate=_utc_now
    )


class FederationRequest(Base):
    __tablename__ = "federation_requests"
    __table_args__ = (Index("ix_federation_requests_type_status", "request_type", "status"),)

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    from_instance_id: Mapped[str] = mapped_column(String, index=True)
    from_instance_name: Mapped[str] = mapped_column(String)
    from_instance_domain: Mapped[str] = mapped_column(String)
    to_instance_id: Mapped[str | None] = mapped_column(String, nullable=True)
    # PARTNERSHIP | PROMOTION
    request_type: Mapped[str] = mapped_column(String)
    # PENDING | ACKNOWLEDGED | REJECTED
    status: Mapped[str] = mapped_column(String, default="PENDING")
    message: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Requester's key so an accepting instance can authenticate the new peer.
    api_key: Mapped[str | None] = mapped_column(String, nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    node_id: Mapped[str | None] = mapped_column(String, nullable=True)
    # Requester identity epoch when the request was issued.
    epoch: Mapped[int | None] = mapped_column(Integer, nullable=True)
    responded_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    responded_by: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utc_now, server_default=func.now())


class SyncLog(Base):
    __tablename__ = "sync_logs"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    node_id: Mapped[str] = mapped_column(String, ForeignKey("federated_nodes.id"), index=True)
    # PUSH | PULL
    direction: Mapped[str] = mapped_column(String)
    entity_type: Mapped[str] = mapped_column(String, default="FULL")
    # IN_PROGRESS | COMPLETED | FAILED
    status: Mapped[str] = mapped_column(String, default="IN_PROGRESS")
    entity_count: Mapped[int] = mapped_column(Integer, default=0)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    started_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utc_now, server_default=func.now())
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)


class AuditEvent(Base):
    __tablename__ = "audit_events"

    # Use a monotonic numeric id for efficient pagination and ordering.
    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    occurred_at: Mapped[datetime] = mapped_column(UTCDateTime, index=True)
    actor_id: Mapped[str | None] = mapped_column(String, nullable=True)
    actor_role: Mapped[str | None] = mapped_column(String, nullable=True)
    entity_type: Mapped[str] = mapped_column(String, index=True)
    entity_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    action: Mapped[str] = mapped_column(String, index=True)
    outcome: Mapped[str] = mapped_column(String)
    # Sanitized snapshots; secrets are redacted before insert.
    before_state: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    after_state: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    request_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    error_code: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utc_now, server_default=func.now())
