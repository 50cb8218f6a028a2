from decimal import Decimal
from typing import List, Optional, Sequence

import aiosqlite

from marketplace.errors import Conflict

from ._util import money_text, new_id, now, persistent, placeholders, row_dict

_COLS = (
    "id", "request_id", "provider_id", "capability_id", "agreed_price_per_hour",
    "status", "start_time", "end_time", "created_at", "updated_at",
)
_JOINED = (
    "provider_name", "provider_reputation", "requester_id", "requester_name",
    "gpu_count", "gpu_type", "duration_hours",
)
_SELECT = (
    "SELECT " + ", ".join(f"m.{c}" for c in _COLS)
    + ", p.name, p.reputation_score, r.requester_id, q.name, r.gpu_count, r.gpu_type, r.duration_hours"
    " FROM matches m"
    " JOIN agents p ON m.provider_id = p.id"
    " JOIN compute_requests r ON m.request_id = r.id"
    " JOIN agents q ON r.requester_id = q.id"
)

# Statuses covered by idx_matches_request_accepted
HELD = ("accepted", "in_progress", "completed")
LIVE = ("proposed", "accepted")


def _match(row) -> dict:
    d = row_dict(_COLS + _JOINED, row)
    d["agreed_price_per_hour"] = Decimal(d["agreed_price_per_hour"])
    return d


@persistent
class MatchRepo:
    """CRUD and guarded status transitions for the matches table."""

    def __init__(self, db: aiosqlite.Connection):
        self._db = db

    async def create(
        self,
        request_id: str,
        provider_id: str,
        capability_id: Optional[str],
        agreed_price_per_hour: Decimal,
    ) -> dict:
        match_id = new_id()
        ts = now()
        await self._db.execute(
            "INSERT INTO matches (id, request_id, provider_id, capability_id, "
            "agreed_price_per_hour, created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?, ?)",
            (match_id, request_id, provider_id, capability_id,
             money_text(agreed_price_per_hour), ts, ts),
        )
        await self._db.commit()
        return await self.get(match_id)

    async def get(self, match_id: str) -> Optional[dict]:
        async with self._db.execute(f"{_SELECT} WHERE m.id = ?", (match_id,)) as cursor:
            row = await cursor.fetchone()
        return _match(row) if row else None

    async def list_for_request(self, request_id: str) -> List[dict]:
        return await self._list("WHERE m.request_id = ?", (request_id,))

    async def list_for_provider(self, provider_id: str) -> List[dict]:
        return await self._list("WHERE m.provider_id = ?", (provider_id,))

    async def list_by_status(self, status: str) -> List[dict]:
        return await self._list("WHERE m.status = ?", (status,))

    async def _list(self, where: str, params: tuple) -> List[dict]:
        results = []
        async with self._db.execute(
            f"{_SELECT} {where} ORDER BY m.created_at DESC", params,
        ) as cursor:
            async for row in cursor:
                results.append(_match(row))
        return results

    async def transition(
        self,
        match_id: str,
        from_statuses: Sequence[str],
        to_status: str,
        start_time: Optional[float] = None,
        end_time: Optional[float] = None,
        exclusive: bool = False,
    ) -> bool:
        """Conditional status update.

        With ``exclusive`` the update also requires that no sibling match of
        the same request already holds it; the partial unique index backs
        this up if two writers race past the check.
        """
        sets = ["status = ?", "updated_at = ?"]
        params: list = [to_status, now()]
        if start_time is not None:
            sets.append("start_time = ?")
            params.append(start_time)
        if end_time is not None:
            sets.append("end_time = ?")
            params.append(end_time)
        query = (
            f"UPDATE matches SET {', '.join(sets)} "
            f"WHERE id = ? AND status IN ({placeholders(from_statuses)})"
        )
        params += [match_id, *from_statuses]
        if exclusive:
            query += (
                " AND NOT EXISTS (SELECT 1 FROM matches s WHERE s.request_id = matches.request_id"
                f" AND s.id != matches.id AND s.status IN ({placeholders(HELD)}))"
            )
            params += list(HELD)
        try:
            cursor = await self._db.execute(query, params)
        except aiosqlite.IntegrityError:
            await self._db.rollback()
            raise Conflict(
                "Another match for this request is already accepted",
                entity_id=match_id, actual=to_status,
            )
        await self._db.commit()
        return cursor.rowcount > 0

    async def live_count_for_request(self, request_id: str, exclude_id: Optional[str] = None) -> int:
        """Matches of a request still proposed or accepted."""
        query = (
            f"SELECT COUNT(*) FROM matches WHERE request_id = ? AND status IN ({placeholders(LIVE)})"
        )
        params: tuple = (request_id, *LIVE)
        if exclude_id:
            query += " AND id != ?"
            params += (exclude_id,)
        async with self._db.execute(query, params) as cursor:
            row = await cursor.fetchone()
        return row[0] if row else 0

    async def cancel_proposed_for_request(self, request_id: str) -> int:
        cursor = await self._db.execute(
            "UPDATE matches SET status = 'cancelled', updated_at = ? "
            "WHERE request_id = ? AND status = 'proposed'",
            (now(), request_id),
        )
        await self._db.commit()
        return cursor.rowcount

    async def stats(self) -> dict:
        async with self._db.execute(
            "SELECT COUNT(*), "
            "SUM(CASE WHEN status = 'proposed' THEN 1 ELSE 0 END), "
            "SUM(CASE WHEN status = 'accepted' THEN 1 ELSE 0 END), "
            "SUM(CASE WHEN status = 'in_progress' THEN 1 ELSE 0 END), "
            "SUM(CASE WHEN status = 'completed' THEN 1 ELSE 0 END), "
            "SUM(CASE WHEN status = 'failed' THEN 1 ELSE 0 END), "
            "SUM(CASE WHEN status = 'cancelled' THEN 1 ELSE 0 END) "
            "FROM matches"
        ) as cursor:
            row = await cursor.fetchone()
        keys = ("total", "proposed", "accepted", "in_progress", "completed", "failed", "cancelled")
        return {k: (v or 0) for k, v in zip(keys, row)}
