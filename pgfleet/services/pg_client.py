from __future__ import annotations

import asyncio
from dataclasses import dataclass, replace
import logging
import time
from typing import Any
from urllib.parse import parse_qs, quote, unquote, urlparse

import asyncpg

from pgfleet.core.config import get_settings
from pgfleet.core.errors import NodeAuthError, NodeCommandError, NodeConnectionError
from pgfleet.services.telemetry import record_node_call


logger = logging.getLogger(__name__)

_AUTH_ERRORS = (
    asyncpg.InvalidPasswordError,
    asyncpg.InvalidAuthorizationSpecificationError,
)


@dataclass(frozen=True)
class NodeConnectionConfig:
    host: str
    port: int
    user: str
    password: str
    database: str = "postgres"
    ssl: bool = True

    def with_credentials(self, *, user: str, password: str) -> "NodeConnectionConfig":
        return replace(self, user=user, password=password)


def parse_connection_string(value: str) -> NodeConnectionConfig:
    # Accept postgres:// and postgresql:// URLs; sslmode=disable is the only way to turn SSL off.
    parsed = urlparse(value)
    if parsed.scheme not in {"postgres", "postgresql"}:
        raise ValueError(f"Unsupported connection string scheme: {parsed.scheme or '<none>'}")
    if not parsed.hostname:
        raise ValueError("Connection string is missing a host")
    params = parse_qs(parsed.query)
    sslmode = (params.get("sslmode") or ["require"])[0].lower()
    database = unquote(parsed.path.lstrip("/")) or get_settings().node_admin_database
    return NodeConnectionConfig(
        host=parsed.hostname,
        port=parsed.port or 5432,
        user=unquote(parsed.username or ""),
        password=unquote(parsed.password or ""),
        database=database,
        ssl=sslmode != "disable",
    )


def build_connection_string(config: NodeConnectionConfig, *, include_password: bool = False) -> str:
    auth = quote(config.user, safe="")
    if include_password and config.password:
        auth = f"{auth}:{quote(config.password, safe='')}"
    sslmode = "require" if config.ssl else "disable"
    return f"postgresql://{auth}@{config.host}:{config.port}/{quote(config.database, safe='')}?sslmode={sslmode}"


def quote_ident(value: str) -> str:
    return '"' + value.replace('"', '""') + '"'


def quote_literal(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


class PostgresNodeClient:
    """Issues control statements against managed Postgres nodes.

    Every call opens a fresh connection and closes it before returning. Nodes
    are few and calls are rare, so pooling per node would only hold sessions
    open on servers we are about to promote or demote.
    """

    def __init__(self, *, connect_timeout_s: float | None = None) -> None:
        settings = get_settings()
        self._connect_timeout_s = connect_timeout_s or settings.node_connect_timeout_s

    async def _connect(self, config: NodeConnectionConfig) -> asyncpg.Connection:
        try:
            return await asyncpg.connect(
                host=config.host,
                port=config.port,
                user=config.user,
                password=config.password,
                database=config.database,
                ssl="require" if config.ssl else False,
                timeout=self._connect_timeout_s,
            )
        except _AUTH_ERRORS as exc:
            raise NodeAuthError(f"Authentication failed for {config.user}@{config.host}:{config.port}") from exc
        except (OSError, asyncio.TimeoutError, asyncpg.PostgresError) as exc:
            raise NodeConnectionError(
                f"Could not connect to {config.host}:{config.port}: {exc.__class__.__name__}"
            ) from exc

    async def _run(self, operation: str, config: NodeConnectionConfig, func) -> Any:
        # Open, run, close; statement failures surface as NodeCommandError.
        started = time.monotonic()
        success = False
        conn = await self._connect(config)
        try:
            result = await func(conn)
            success = True
            return result
        except asyncpg.PostgresError as exc:
            raise NodeCommandError(f"{operation} failed on {config.host}:{config.port}: {exc}") from exc
        finally:
            record_node_call(
                operation=operation,
                latency_ms=(time.monotonic() - started) * 1000.0,
                success=success,
            )
            try:
                await conn.close(timeout=self._connect_timeout_s)
            except Exception as exc:  # noqa: BLE001 - close failures are not actionable
                logger.debug("node_connection_close_failed host=%s", config.host, exc_info=exc)

    async def test_connection(self, config: NodeConnectionConfig) -> bool:
        # Authentication probe; any connect or auth failure reads as "not accepted".
        try:
            value = await self._run("test_connection", config, lambda conn: conn.fetchval("SELECT 1"))
        except (NodeConnectionError, NodeCommandError) as exc:
            logger.info("node_connection_test_failed host=%s port=%s reason=%s", config.host, config.port, exc)
            return False
        return value == 1

    async def promote(self, config: NodeConnectionConfig, *, wait: bool = True, timeout_s: int = 60) -> bool:
        return bool(
            await self._run(
                "promote",
                config,
                lambda conn: conn.fetchval("SELECT pg_promote($1, $2)", wait, int(timeout_s)),
            )
        )

    async def terminate_backends(self, config: NodeConnectionConfig) -> int:
        # Terminate client backends only; system roles and our own session are left alone.
        query = """
            SELECT count(*) FILTER (WHERE terminated)
            FROM (
                SELECT pg_terminate_backend(pid) AS terminated
                FROM pg_stat_activity
                WHERE pid <> pg_backend_pid()
                  AND backend_type = 'client backend'
                  AND usename IS NOT NULL
                  AND usename NOT IN ('postgres', 'rdsadmin', 'replication')
                  AND usename <> $1
            ) AS t
        """
        return int(await self._run("terminate_backends", config, lambda conn: conn.fetchval(query, config.user)) or 0)

    async def is_in_recovery(self, config: NodeConnectionConfig) -> bool:
        return bool(
            await self._run("is_in_recovery", config, lambda conn: conn.fetchval("SELECT pg_is_in_recovery()"))
        )

    async def current_wal_lsn(self, config: NodeConnectionConfig) -> str | None:
        # Replicas report their replay position; primaries their write position.
        query = """
            SELECT CASE WHEN pg_is_in_recovery()
                THEN pg_last_wal_replay_lsn()::text
                ELSE pg_current_wal_lsn()::text END
        """
        return await self._run("current_wal_lsn", config, lambda conn: conn.fetchval(query))

    async def replication_lag_ms(self, config: NodeConnectionConfig) -> int | None:
        # None when the node is not a replica or has not replayed anything yet.
        query = """
            SELECT CASE WHEN pg_is_in_recovery()
                THEN EXTRACT(EPOCH FROM (now() - pg_last_xact_replay_timestamp())) * 1000
                ELSE NULL END
        """
        value = await self._run("replication_lag_ms", config, lambda conn: conn.fetchval(query))
        if value is None:
            return None
        return max(0, int(value))

    async def active_connection_count(self, config: NodeConnectionConfig) -> int:
        query = "SELECT count(*) FROM pg_stat_activity WHERE state = 'active' AND pid <> pg_backend_pid()"
        return int(await self._run("active_connection_count", config, lambda conn: conn.fetchval(query)) or 0)

    async def change_user_password(
        self,
        config: NodeConnectionConfig,
        *,
        target_user: str,
        new_password: str,
    ) -> None:
        # ALTER USER does not accept bind parameters, so quote both parts explicitly.
        statement = f"ALTER USER {quote_ident(target_user)} WITH PASSWORD {quote_literal(new_password)}"
        await self._run("change_user_password", config, lambda conn: conn.execute(statement))

    async def replication_slots(self, config: NodeConnectionConfig) -> list[dict[str, Any]]:
        query = """
            SELECT slot_name, slot_type, active, restart_lsn::text AS restart_lsn,
                   confirmed_flush_lsn::text AS confirmed_flush_lsn
            FROM pg_replication_slots
            ORDER BY slot_name
        """
        rows = await self._run("replication_slots", config, lambda conn: conn.fetch(query))
        return [dict(row) for row in rows]

    async def wal_activity(self, config: NodeConnectionConfig) -> dict[str, Any]:
        async def _collect(conn: asyncpg.Connection) -> dict[str, Any]:
            in_recovery = await conn.fetchval("SELECT pg_is_in_recovery()")
            archiver = await conn.fetchrow(
                "SELECT archived_count, failed_count, last_archived_wal, last_failed_wal FROM pg_stat_archiver"
            )
            replicas: list[dict[str, Any]] = []
            lsn: str | None
            if in_recovery:
                lsn = await conn.fetchval("SELECT pg_last_wal_replay_lsn()::text")
            else:
                lsn = await conn.fetchval("SELECT pg_current_wal_lsn()::text")
                rows = await conn.fetch(
                    """
                    SELECT client_addr::text AS client_addr, state, sync_state,
                           sent_lsn::text AS sent_lsn, replay_lsn::text AS replay_lsn,
                           EXTRACT(EPOCH FROM replay_lag) * 1000 AS replay_lag_ms
                    FROM pg_stat_replication
                    """
                )
                replicas = [dict(row) for row in rows]
            return {
                "in_recovery": bool(in_recovery),
                "lsn": lsn,
                "archiver": dict(archiver) if archiver else {},
                "replicas": replicas,
            }

        return await self._run("wal_activity", config, _collect)


_client: PostgresNodeClient | None = None


def get_node_client() -> PostgresNodeClient:
    global _client
    if _client is None:
        _client = PostgresNodeClient()
    return _client
