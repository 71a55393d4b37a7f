from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncSession

from pgfleet.domain.models import Cluster, Node
from pgfleet.services.nodes import register_cluster, register_node


async def seed_cluster(
    session: AsyncSession,
    *,
    name: str = "orders",
    replicas: int = 1,
) -> tuple[Cluster, Node, list[Node]]:
    # One primary plus N replicas on distinct hosts so the fake client can tell them apart.
    cluster = await register_cluster(session, name=name)
    primary = await register_node(
        session,
        cluster_id=cluster.id,
        name=f"{name}-primary",
        role="PRIMARY",
        connection_string="postgresql://postgres@10.0.0.1:5432/postgres?sslmode=disable",
    )
    replica_nodes = []
    for index in range(replicas):
        replica_nodes.append(
            await register_node(
                session,
                cluster_id=cluster.id,
                name=f"{name}-replica-{index + 1}",
                role="REPLICA",
                connection_string=f"postgresql://postgres@10.0.1.{index + 1}:5432/postgres?sslmode=disable",
            )
        )
    return cluster, primary, replica_nodes
