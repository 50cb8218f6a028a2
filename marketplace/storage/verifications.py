import json
from decimal import Decimal
from typing import Any, List, Optional

import aiosqlite

from ._util import new_id, now, persistent, row_dict

_COLS = (
    "id", "transaction_id", "verifier_id", "kind", "proof_hash", "proof_data",
    "verified", "decided", "notes", "resolved_by", "created_at", "updated_at",
)
_SELECT = "SELECT " + ", ".join(f"v.{c}" for c in _COLS) + " FROM verifications v"
_DETAIL = (
    "SELECT " + ", ".join(f"v.{c}" for c in _COLS)
    + ", t.amount, t.status, t.requester_id, t.provider_id, p.name, w.name"
    " FROM verifications v"
    " JOIN transactions t ON v.transaction_id = t.id"
    " JOIN agents p ON t.provider_id = p.id"
    " LEFT JOIN agents w ON v.verifier_id = w.id"
)
_DETAIL_COLS = (
    "amount", "transaction_status", "requester_id", "provider_id", "provider_name", "verifier_name",
)


def _verification(row, extra=()) -> dict:
    d = row_dict(_COLS + tuple(extra), row)
    d["verified"] = bool(d["verified"])
    d["decided"] = bool(d["decided"])
    d["proof_data"] = json.loads(d["proof_data"]) if d["proof_data"] else None
    if d.get("amount") is not None:
        d["amount"] = Decimal(d["amount"])
    return d


@persistent
class VerificationRepo:
    """Proof submissions and disputes against transactions."""

    def __init__(self, db: aiosqlite.Connection):
        self._db = db

    async def create(
        self,
        transaction_id: str,
        verifier_id: Optional[str],
        kind: str,
        proof_data: Any,
        proof_hash: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> dict:
        verification_id = new_id()
        ts = now()
        await self._db.execute(
            "INSERT INTO verifications (id, transaction_id, verifier_id, kind, proof_hash, "
            "proof_data, notes, created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (verification_id, transaction_id, verifier_id, kind, proof_hash,
             json.dumps(proof_data, ensure_ascii=False), notes, ts, ts),
        )
        await self._db.commit()
        return await self.get(verification_id)

    async def get(self, verification_id: str) -> Optional[dict]:
        async with self._db.execute(f"{_SELECT} WHERE v.id = ?", (verification_id,)) as cursor:
            row = await cursor.fetchone()
        return _verification(row) if row else None

    async def get_detail(self, verification_id: str) -> Optional[dict]:
        async with self._db.execute(f"{_DETAIL} WHERE v.id = ?", (verification_id,)) as cursor:
            row = await cursor.fetchone()
        return _verification(row, _DETAIL_COLS) if row else None

    async def list_for_transaction(self, transaction_id: str) -> List[dict]:
        return await self._list("WHERE v.transaction_id = ?", (transaction_id,))

    async def list_pending_for_requester(self, requester_id: str) -> List[dict]:
        return await self._list("WHERE v.verified = 0 AND t.requester_id = ?", (requester_id,))

    async def list_pending(self) -> List[dict]:
        return await self._list("WHERE v.decided = 0", ())

    async def _list(self, where: str, params: tuple) -> List[dict]:
        results = []
        async with self._db.execute(f"{_DETAIL} {where} ORDER BY v.created_at DESC", params) as cursor:
            async for row in cursor:
                results.append(_verification(row, _DETAIL_COLS))
        return results

    async def decide(
        self,
        verification_id: str,
        verified: bool,
        notes: Optional[str] = None,
        verifier_id: Optional[str] = None,
        resolved_by: Optional[str] = None,
    ) -> bool:
        """Record a decision once. False when the record was already decided."""
        sets = "verified = ?, decided = 1, notes = COALESCE(?, notes), updated_at = ?"
        params: list = [1 if verified else 0, notes, now()]
        if verifier_id is not None:
            sets += ", verifier_id = ?"
            params.append(verifier_id)
        if resolved_by is not None:
            sets += ", resolved_by = ?"
            params.append(resolved_by)
        cursor = await self._db.execute(
            f"UPDATE verifications SET {sets} WHERE id = ? AND decided = 0",
            (*params, verification_id),
        )
        await self._db.commit()
        return cursor.rowcount > 0

    async def stats(self) -> dict:
        async with self._db.execute(
            "SELECT COUNT(*), "
            "SUM(CASE WHEN verified = 1 THEN 1 ELSE 0 END), "
            "SUM(CASE WHEN verified = 0 THEN 1 ELSE 0 END), "
            "SUM(CASE WHEN decided = 1 AND verified = 0 THEN 1 ELSE 0 END), "
            "SUM(CASE WHEN kind = 'dispute' THEN 1 ELSE 0 END), "
            "COUNT(DISTINCT transaction_id) "
            "FROM verifications"
        ) as cursor:
            row = await cursor.fetchone()
        keys = (
            "total_verifications", "approved_verifications", "pending_verifications",
            "rejected_verifications", "disputes", "unique_transactions",
        )
        return {k: (v or 0) for k, v in zip(keys, row)}
