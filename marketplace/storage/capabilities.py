from decimal import Decimal
from typing import List, Optional

import aiosqlite

from ._util import money_text, new_id, now, persistent, row_dict

_COLS = (
    "id", "provider_id", "gpu_count", "gpu_type", "cpu_cores", "memory_gb",
    "price_per_hour", "available_hours", "region", "availability_status",
    "created_at", "updated_at",
)
_SELECT = "SELECT " + ", ".join(f"pc.{c}" for c in _COLS)

UPDATABLE = ("price_per_hour", "available_hours", "availability_status", "region")


def _capability(row, extra=()) -> dict:
    d = row_dict(_COLS + tuple(extra), row)
    d["price_per_hour"] = Decimal(d["price_per_hour"])
    return d


@persistent
class CapabilityRepo:
    """CRUD operations for the provider_capabilities table."""

    def __init__(self, db: aiosqlite.Connection):
        self._db = db

    async def create(
        self,
        provider_id: str,
        gpu_count: int,
        gpu_type: str,
        cpu_cores: int,
        memory_gb: int,
        price_per_hour: Decimal,
        region: str = "us-east-1",
        available_hours: int = 0,
    ) -> dict:
        cap_id = new_id()
        ts = now()
        await self._db.execute(
            "INSERT INTO provider_capabilities (id, provider_id, gpu_count, gpu_type, cpu_cores, "
            "memory_gb, price_per_hour, available_hours, region, created_at, updated_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (cap_id, provider_id, gpu_count, gpu_type, cpu_cores, memory_gb,
             money_text(price_per_hour), available_hours, region, ts, ts),
        )
        await self._db.commit()
        return await self.get(cap_id)

    async def get(self, capability_id: str) -> Optional[dict]:
        async with self._db.execute(
            f"{_SELECT} FROM provider_capabilities pc WHERE pc.id = ?", (capability_id,),
        ) as cursor:
            row = await cursor.fetchone()
        return _capability(row) if row else None

    async def get_with_provider(self, capability_id: str) -> Optional[dict]:
        """Capability joined with its provider's reputation and uptime."""
        async with self._db.execute(
            f"{_SELECT}, a.reputation_score, a.uptime_percentage "
            "FROM provider_capabilities pc JOIN agents a ON pc.provider_id = a.id "
            "WHERE pc.id = ?",
            (capability_id,),
        ) as cursor:
            row = await cursor.fetchone()
        return _capability(row, ("reputation_score", "uptime_percentage")) if row else None

    async def list_for_provider(self, provider_id: str) -> List[dict]:
        results = []
        async with self._db.execute(
            f"{_SELECT} FROM provider_capabilities pc WHERE pc.provider_id = ? "
            "ORDER BY pc.created_at ASC",
            (provider_id,),
        ) as cursor:
            async for row in cursor:
                results.append(_capability(row))
        return results

    async def search(
        self, gpu_type: str, min_gpu_count: int, region: Optional[str] = None,
    ) -> List[dict]:
        """Available capabilities of a GPU type with enough GPUs.

        Price is left to the caller: it is compared as Decimal, which SQLite
        cannot do on the stored text.
        """
        query = (
            f"{_SELECT}, a.reputation_score, a.uptime_percentage "
            "FROM provider_capabilities pc JOIN agents a ON pc.provider_id = a.id "
            "WHERE pc.availability_status = 'available' AND pc.gpu_type = ? AND pc.gpu_count >= ?"
        )
        params: tuple = (gpu_type, min_gpu_count)
        if region:
            query += " AND pc.region = ?"
            params += (region,)
        query += " ORDER BY pc.created_at ASC, pc.id ASC"
        results = []
        async with self._db.execute(query, params) as cursor:
            async for row in cursor:
                results.append(_capability(row, ("reputation_score", "uptime_percentage")))
        return results

    async def update(self, capability_id: str, **fields) -> Optional[dict]:
        updates = {k: v for k, v in fields.items() if k in UPDATABLE and v is not None}
        if "price_per_hour" in updates:
            updates["price_per_hour"] = money_text(updates["price_per_hour"])
        if not updates:
            return await self.get(capability_id)
        set_clause = ", ".join(f"{k} = ?" for k in updates)
        await self._db.execute(
            f"UPDATE provider_capabilities SET {set_clause}, updated_at = ? WHERE id = ?",
            (*updates.values(), now(), capability_id),
        )
        await self._db.commit()
        return await self.get(capability_id)

    async def delete(self, capability_id: str) -> bool:
        cursor = await self._db.execute(
            "DELETE FROM provider_capabilities WHERE id = ?", (capability_id,)
        )
        await self._db.commit()
        return cursor.rowcount > 0

    async def count(self, status: Optional[str] = None) -> int:
        if status:
            async with self._db.execute(
                "SELECT COUNT(*) FROM provider_capabilities WHERE availability_status = ?", (status,)
            ) as cursor:
                row = await cursor.fetchone()
        else:
            async with self._db.execute("SELECT COUNT(*) FROM provider_capabilities") as cursor:
                row = await cursor.fetchone()
        return row[0] if row else 0
