from __future__ import annotations

import asyncio

from pgfleet.persistence.db import SessionLocal
from pgfleet.services.federation import resolve_expired_promotions


async def resolve() -> None:
    async with SessionLocal() as session:
        acknowledged = await resolve_expired_promotions(session)
        print(f"promotions_acknowledged={len(acknowledged)}")


if __name__ == "__main__":
    asyncio.run(resolve())
