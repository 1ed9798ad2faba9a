from __future__ import annotations

import asyncio

from sisfo_identity.persistence.db import SessionLocal
from sisfo_identity.services.maintenance import prune_audit_logs


async def prune() -> None:
    async with SessionLocal() as session:
        deleted = await prune_audit_logs(session)
        await session.commit()
        print(f"pruned_audit_logs={deleted}")


if __name__ == "__main__":
    asyncio.run(prune())
