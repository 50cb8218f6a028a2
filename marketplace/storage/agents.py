from decimal import Decimal
from typing import List, Optional

import aiosqlite

from ._util import money_text, new_id, now, persistent, row_dict, to_money

_COLS = (
    "id", "name", "type", "wallet_address", "reputation_score",
    "total_transactions", "total_earnings", "total_spent",
    "uptime_percentage", "api_key", "created_at", "updated_at",
)
_SELECT = f"SELECT {', '.join(_COLS)} FROM agents"

# Fields a profile update may touch
UPDATABLE = ("name", "wallet_address", "uptime_percentage")


def _agent(row) -> dict:
    d = row_dict(_COLS, row)
    d["total_earnings"] = Decimal(d["total_earnings"])
    d["total_spent"] = Decimal(d["total_spent"])
    return d


@persistent
class AgentRepo:
    """CRUD operations for the agents table."""

    def __init__(self, db: aiosqlite.Connection):
        self._db = db

    async def create(
        self, name: str, agent_type: str, api_key: str, wallet_address: Optional[str] = None,
    ) -> dict:
        agent_id = new_id()
        ts = now()
        await self._db.execute(
            "INSERT INTO agents (id, name, type, wallet_address, api_key, created_at, updated_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?)",
            (agent_id, name, agent_type, wallet_address, api_key, ts, ts),
        )
        await self._db.commit()
        return await self.get(agent_id)

    async def get(self, agent_id: str) -> Optional[dict]:
        async with self._db.execute(f"{_SELECT} WHERE id = ?", (agent_id,)) as cursor:
            row = await cursor.fetchone()
        return _agent(row) if row else None

    async def get_by_api_key(self, api_key: str) -> Optional[dict]:
        if not api_key:
            return None
        async with self._db.execute(f"{_SELECT} WHERE api_key = ?", (api_key,)) as cursor:
            row = await cursor.fetchone()
        return _agent(row) if row else None

    async def list_by_type(self, agent_type: str) -> List[dict]:
        """Agents of ``agent_type``, including those registered as 'both'."""
        results = []
        async with self._db.execute(
            f"{_SELECT} WHERE type = ? OR type = 'both' ORDER BY created_at DESC",
            (agent_type,),
        ) as cursor:
            async for row in cursor:
                results.append(_agent(row))
        return results

    async def list_all(self, limit: int = 100, offset: int = 0) -> List[dict]:
        results = []
        async with self._db.execute(
            f"{_SELECT} ORDER BY created_at DESC LIMIT ? OFFSET ?", (limit, offset),
        ) as cursor:
            async for row in cursor:
                results.append(_agent(row))
        return results

    async def update(self, agent_id: str, **fields) -> Optional[dict]:
        updates = {k: v for k, v in fields.items() if k in UPDATABLE}
        if not updates:
            return await self.get(agent_id)
        set_clause = ", ".join(f"{k} = ?" for k in updates)
        await self._db.execute(
            f"UPDATE agents SET {set_clause}, updated_at = ? WHERE id = ?",
            (*updates.values(), now(), agent_id),
        )
        await self._db.commit()
        return await self.get(agent_id)

    async def set_reputation(self, agent_id: str, score: float):
        await self._db.execute(
            "UPDATE agents SET reputation_score = ?, updated_at = ? WHERE id = ?",
            (score, now(), agent_id),
        )
        await self._db.commit()

    async def record_settlement(self, requester_id: str, provider_id: str, amount: Decimal):
        """Apply a settled payment to both parties' running totals."""
        amount = to_money(amount)
        ts = now()
        for agent_id, column in ((provider_id, "total_earnings"), (requester_id, "total_spent")):
            async with self._db.execute(
                f"SELECT {column} FROM agents WHERE id = ?", (agent_id,)
            ) as cursor:
                row = await cursor.fetchone()
            if row is None:
                continue
            await self._db.execute(
                f"UPDATE agents SET {column} = ?, total_transactions = total_transactions + 1, "
                "updated_at = ? WHERE id = ?",
                (money_text(Decimal(row[0]) + amount), ts, agent_id),
            )
        await self._db.commit()

    async def delete(self, agent_id: str) -> bool:
        cursor = await self._db.execute("DELETE FROM agents WHERE id = ?", (agent_id,))
        await self._db.commit()
        return cursor.rowcount > 0

    async def count(self) -> int:
        async with self._db.execute("SELECT COUNT(*) FROM agents") as cursor:
            row = await cursor.fetchone()
        return row[0] if row else 0
