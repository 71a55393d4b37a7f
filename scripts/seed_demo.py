from __future__ import annotations

import argparse
import asyncio

from pgfleet.persistence.db import SessionLocal
from pgfleet.services.nodes import register_cluster, register_node


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Register a demo cluster with one primary and its replicas")
    parser.add_argument("--name", default="demo")
    parser.add_argument("--primary", default="postgresql://postgres@localhost:5432/postgres?sslmode=disable")
    parser.add_argument("--replica", action="append", default=[], help="Replica connection string; repeatable")
    return parser


async def seed(name: str, primary: str, replicas: list[str]) -> None:
    async with SessionLocal() as session:
        cluster = await register_cluster(session, name=name, description="Seeded demo cluster")
        node = await register_node(
            session,
            cluster_id=cluster.id,
            name=f"{name}-primary",
            role="PRIMARY",
            connection_string=primary,
        )
        print(f"cluster_id={cluster.id} primary_id={node.id}")
        for index, connection_string in enumerate(replicas, start=1):
            replica = await register_node(
                session,
                cluster_id=cluster.id,
                name=f"{name}-replica-{index}",
                role="REPLICA",
                connection_string=connection_string,
            )
            print(f"replica_id={replica.id}")


if __name__ == "__main__":
    args = _build_parser().parse_args()
    asyncio.run(seed(args.name, args.primary, args.replica))
