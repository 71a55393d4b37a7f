from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from pgfleet.core.errors import NodeConnectionError
from pgfleet.services.pg_client import NodeConnectionConfig


@dataclass
class FakeNode:
    # None accepts any password.
    password: str | None = None
    reachable: bool = True
    in_recovery: bool = True
    lag_ms: int | None = 10
    active_connections: int = 3
    promote_clears_recovery: bool = True


@dataclass
class FakeNodeClient:
    """In-memory stand-in for PostgresNodeClient, keyed by node host."""

    nodes: dict[str, FakeNode] = field(default_factory=dict)
    calls: list[tuple[str, str]] = field(default_factory=list)
    password_changes: list[tuple[str, str, str]] = field(default_factory=list)

    def node(self, host: str) -> FakeNode:
        return self.nodes.setdefault(host, FakeNode())

    def _reachable(self, operation: str, config: NodeConnectionConfig) -> FakeNode:
        self.calls.append((operation, config.host))
        node = self.node(config.host)
        if not node.reachable:
            raise NodeConnectionError(f"Could not connect to {config.host}:{config.port}: OSError")
        return node

    async def test_connection(self, config: NodeConnectionConfig) -> bool:
        self.calls.append(("test_connection", config.host))
        node = self.node(config.host)
        if not node.reachable:
            return False
        return node.password is None or node.password == config.password

    async def promote(self, config: NodeConnectionConfig, *, wait: bool = True, timeout_s: int = 60) -> bool:
        node = self._reachable("promote", config)
        if node.promote_clears_recovery:
            node.in_recovery = False
        return not node.in_recovery

    async def terminate_backends(self, config: NodeConnectionConfig) -> int:
        node = self._reachable("terminate_backends", config)
        terminated, node.active_connections = node.active_connections, 0
        return terminated

    async def is_in_recovery(self, config: NodeConnectionConfig) -> bool:
        return self._reachable("is_in_recovery", config).in_recovery

    async def current_wal_lsn(self, config: NodeConnectionConfig) -> str | None:
        self._reachable("current_wal_lsn", config)
        return "0/3000060"

    async def replication_lag_ms(self, config: NodeConnectionConfig) -> int | None:
        node = self._reachable("replication_lag_ms", config)
        return node.lag_ms if node.in_recovery else None

    async def active_connection_count(self, config: NodeConnectionConfig) -> int:
        return self._reachable("active_connection_count", config).active_connections

    async def change_user_password(
        self,
        config: NodeConnectionConfig,
        *,
        target_user: str,
        new_password: str,
    ) -> None:
        node = self._reachable("change_user_password", config)
        self.password_changes.append((config.host, target_user, new_password))
        node.password = new_password

    async def replication_slots(self, config: NodeConnectionConfig) -> list[dict[str, Any]]:
        self._reachable("replication_slots", config)
        return []

    async def wal_activity(self, config: NodeConnectionConfig) -> dict[str, Any]:
        node = self._reachable("wal_activity", config)
        return {"in_recovery": node.in_recovery, "lsn": "0/3000060", "archiver": {}, "replicas": []}
