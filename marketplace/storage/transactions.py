from decimal import Decimal
from typing import List, Optional, Sequence

import aiosqlite

from ._util import money_text, new_id, now, persistent, placeholders, row_dict

_COLS = (
    "id", "match_id", "requester_id", "provider_id", "amount", "currency", "status",
    "payment_method", "payment_intent_id", "transaction_hash", "created_at", "updated_at",
)
_SELECT = "SELECT " + ", ".join(f"t.{c}" for c in _COLS) + " FROM transactions t"
_DETAIL = (
    "SELECT " + ", ".join(f"t.{c}" for c in _COLS)
    + ", q.name, p.name, m.agreed_price_per_hour, r.duration_hours"
    " FROM transactions t"
    " JOIN agents q ON t.requester_id = q.id"
    " JOIN agents p ON t.provider_id = p.id"
    " JOIN matches m ON t.match_id = m.id"
    " JOIN compute_requests r ON m.request_id = r.id"
)
_DETAIL_COLS = ("requester_name", "provider_name", "agreed_price_per_hour", "duration_hours")


def _transaction(row, extra=()) -> dict:
    d = row_dict(_COLS + tuple(extra), row)
    d["amount"] = Decimal(d["amount"])
    if d.get("agreed_price_per_hour") is not None:
        d["agreed_price_per_hour"] = Decimal(d["agreed_price_per_hour"])
    return d


@persistent
class TransactionRepo:
    """CRUD and guarded status transitions for the transactions table."""

    def __init__(self, db: aiosqlite.Connection):
        self._db = db

    async def create(
        self,
        match_id: str,
        requester_id: str,
        provider_id: str,
        amount: Decimal,
        payment_intent_id: Optional[str] = None,
        currency: str = "USD",
        payment_method: str = "card",
    ) -> dict:
        tx_id = new_id()
        ts = now()
        await self._db.execute(
            "INSERT INTO transactions (id, match_id, requester_id, provider_id, amount, currency, "
            "payment_method, payment_intent_id, created_at, updated_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (tx_id, match_id, requester_id, provider_id, money_text(amount), currency,
             payment_method, payment_intent_id, ts, ts),
        )
        await self._db.commit()
        return await self.get(tx_id)

    async def get(self, transaction_id: str) -> Optional[dict]:
        async with self._db.execute(f"{_SELECT} WHERE t.id = ?", (transaction_id,)) as cursor:
            row = await cursor.fetchone()
        return _transaction(row) if row else None

    async def get_detail(self, transaction_id: str) -> Optional[dict]:
        """Transaction with party names, agreed price and requested duration."""
        async with self._db.execute(f"{_DETAIL} WHERE t.id = ?", (transaction_id,)) as cursor:
            row = await cursor.fetchone()
        return _transaction(row, _DETAIL_COLS) if row else None

    async def find_by_intent(self, payment_intent_id: str) -> Optional[dict]:
        async with self._db.execute(
            f"{_SELECT} WHERE t.payment_intent_id = ? ORDER BY t.created_at DESC LIMIT 1",
            (payment_intent_id,),
        ) as cursor:
            row = await cursor.fetchone()
        return _transaction(row) if row else None

    async def list_for_match(self, match_id: str, statuses: Optional[Sequence[str]] = None) -> List[dict]:
        query = f"{_SELECT} WHERE t.match_id = ?"
        params: tuple = (match_id,)
        if statuses:
            query += f" AND t.status IN ({placeholders(statuses)})"
            params += tuple(statuses)
        query += " ORDER BY t.created_at ASC"
        results = []
        async with self._db.execute(query, params) as cursor:
            async for row in cursor:
                results.append(_transaction(row))
        return results

    async def list_for_agent(self, agent_id: str, role: Optional[str] = None) -> List[dict]:
        """Transactions where the agent is requester, provider, or either when role is None."""
        if role == "requester":
            where, params = "t.requester_id = ?", (agent_id,)
        elif role == "provider":
            where, params = "t.provider_id = ?", (agent_id,)
        else:
            where, params = "(t.requester_id = ? OR t.provider_id = ?)", (agent_id, agent_id)
        results = []
        async with self._db.execute(
            f"{_DETAIL} WHERE {where} ORDER BY t.created_at DESC", params,
        ) as cursor:
            async for row in cursor:
                results.append(_transaction(row, _DETAIL_COLS))
        return results

    async def transition(
        self,
        transaction_id: str,
        from_statuses: Sequence[str],
        to_status: str,
        transaction_hash: Optional[str] = None,
    ) -> bool:
        sets = "status = ?, updated_at = ?"
        params: list = [to_status, now()]
        if transaction_hash is not None:
            sets += ", transaction_hash = ?"
            params.append(transaction_hash)
        cursor = await self._db.execute(
            f"UPDATE transactions SET {sets} "
            f"WHERE id = ? AND status IN ({placeholders(from_statuses)})",
            (*params, transaction_id, *from_statuses),
        )
        await self._db.commit()
        return cursor.rowcount > 0

    async def provider_outcomes(self, provider_id: str) -> dict:
        """Count of settled, refunded and failed transactions for a provider."""
        outcomes = {"settled": 0, "refunded": 0, "failed": 0}
        async with self._db.execute(
            "SELECT status, COUNT(*) FROM transactions WHERE provider_id = ? "
            "AND status IN ('settled', 'refunded', 'failed') GROUP BY status",
            (provider_id,),
        ) as cursor:
            async for status, count in cursor:
                outcomes[status] = count
        return outcomes

    async def agent_totals(self, agent_id: str) -> dict:
        """Distinct transactions touching the agent and the settled sum."""
        count = 0
        settled = Decimal("0")
        async with self._db.execute(
            "SELECT status, amount FROM transactions WHERE requester_id = ? OR provider_id = ?",
            (agent_id, agent_id),
        ) as cursor:
            async for status, amount in cursor:
                count += 1
                if status == "settled":
                    settled += Decimal(amount)
        return {"total_transactions": count, "total_amount": settled}

    async def stats(self) -> List[dict]:
        """Count, sum and average amount per status.

        Summed in Python since the amounts are decimal text.
        """
        groups: dict = {}
        async with self._db.execute("SELECT status, amount FROM transactions") as cursor:
            async for status, amount in cursor:
                g = groups.setdefault(status, {"status": status, "count": 0, "total_amount": Decimal("0")})
                g["count"] += 1
                g["total_amount"] += Decimal(amount)
        results = []
        for status in sorted(groups):
            g = groups[status]
            g["avg_amount"] = (g["total_amount"] / g["count"]).quantize(Decimal("0.00000001"))
            results.append(g)
        return results
