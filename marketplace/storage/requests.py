from decimal import Decimal
from typing import List, Optional, Sequence

import aiosqlite

from ._util import money_text, new_id, now, persistent, placeholders, row_dict

_COLS = (
    "id", "requester_id", "gpu_count", "gpu_type", "cpu_cores", "memory_gb",
    "duration_hours", "max_price_per_hour", "status", "description",
    "created_at", "updated_at",
)
_SELECT = "SELECT " + ", ".join(f"r.{c}" for c in _COLS)
_FROM = " FROM compute_requests r JOIN agents a ON r.requester_id = a.id"

EDITABLE = ("description", "max_price_per_hour", "duration_hours", "cpu_cores", "memory_gb")


def _request(row, extra=()) -> dict:
    d = row_dict(_COLS + tuple(extra), row)
    d["max_price_per_hour"] = Decimal(d["max_price_per_hour"])
    return d


@persistent
class RequestRepo:
    """CRUD and status transitions for the compute_requests table."""

    def __init__(self, db: aiosqlite.Connection):
        self._db = db

    async def create(
        self,
        requester_id: str,
        gpu_count: int,
        gpu_type: str,
        duration_hours: int,
        max_price_per_hour: Decimal,
        cpu_cores: Optional[int] = None,
        memory_gb: Optional[int] = None,
        description: Optional[str] = None,
    ) -> dict:
        request_id = new_id()
        ts = now()
        await self._db.execute(
            "INSERT INTO compute_requests (id, requester_id, gpu_count, gpu_type, cpu_cores, "
            "memory_gb, duration_hours, max_price_per_hour, description, created_at, updated_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (request_id, requester_id, gpu_count, gpu_type, cpu_cores, memory_gb,
             duration_hours, money_text(max_price_per_hour), description, ts, ts),
        )
        await self._db.commit()
        return await self.get(request_id)

    async def get(self, request_id: str) -> Optional[dict]:
        """Request with its requester's name and reputation."""
        async with self._db.execute(
            f"{_SELECT}, a.name, a.reputation_score{_FROM} WHERE r.id = ?", (request_id,),
        ) as cursor:
            row = await cursor.fetchone()
        return _request(row, ("requester_name", "requester_reputation")) if row else None

    async def list_for_requester(self, requester_id: str) -> List[dict]:
        return await self._list("WHERE r.requester_id = ?", (requester_id,))

    async def list_by_status(self, status: str, limit: int = 100, offset: int = 0) -> List[dict]:
        return await self._list(
            "WHERE r.status = ?", (status,), limit=limit, offset=offset,
        )

    async def list_all(self, limit: int = 100, offset: int = 0) -> List[dict]:
        return await self._list("", (), limit=limit, offset=offset)

    async def _list(self, where: str, params: tuple, limit: int = 1000, offset: int = 0) -> List[dict]:
        results = []
        async with self._db.execute(
            f"{_SELECT}, a.name, a.reputation_score{_FROM} {where} "
            "ORDER BY r.created_at DESC LIMIT ? OFFSET ?",
            (*params, limit, offset),
        ) as cursor:
            async for row in cursor:
                results.append(_request(row, ("requester_name", "requester_reputation")))
        return results

    async def update_fields(self, request_id: str, **fields) -> bool:
        """Edit descriptive fields; only applies while the request is pending."""
        updates = {k: v for k, v in fields.items() if k in EDITABLE and v is not None}
        if "max_price_per_hour" in updates:
            updates["max_price_per_hour"] = money_text(updates["max_price_per_hour"])
        if not updates:
            return True
        set_clause = ", ".join(f"{k} = ?" for k in updates)
        cursor = await self._db.execute(
            f"UPDATE compute_requests SET {set_clause}, updated_at = ? "
            "WHERE id = ? AND status = 'pending'",
            (*updates.values(), now(), request_id),
        )
        await self._db.commit()
        return cursor.rowcount > 0

    async def transition(self, request_id: str, from_statuses: Sequence[str], to_status: str) -> bool:
        """Conditional status update. False when the row was not in ``from_statuses``."""
        cursor = await self._db.execute(
            f"UPDATE compute_requests SET status = ?, updated_at = ? "
            f"WHERE id = ? AND status IN ({placeholders(from_statuses)})",
            (to_status, now(), request_id, *from_statuses),
        )
        await self._db.commit()
        return cursor.rowcount > 0

    async def stats(self) -> dict:
        async with self._db.execute(
            "SELECT COUNT(*), "
            "SUM(CASE WHEN status = 'pending' THEN 1 ELSE 0 END), "
            "SUM(CASE WHEN status = 'matched' THEN 1 ELSE 0 END), "
            "SUM(CASE WHEN status = 'in_progress' THEN 1 ELSE 0 END), "
            "SUM(CASE WHEN status = 'completed' THEN 1 ELSE 0 END), "
            "SUM(CASE WHEN status = 'failed' THEN 1 ELSE 0 END), "
            "SUM(CASE WHEN status = 'cancelled' THEN 1 ELSE 0 END) "
            "FROM compute_requests"
        ) as cursor:
            row = await cursor.fetchone()
        keys = ("total", "pending", "matched", "in_progress", "completed", "failed", "cancelled")
        return {k: (v or 0) for k, v in zip(keys, row)}
