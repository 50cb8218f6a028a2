"""
states.py - Status enums and transition tables.

Each entity with a lifecycle gets a closed enum and a table mapping
(event, current status) to the next status. ``transition()`` is the only way
controllers compute a new status; anything not in the table is a Conflict.
Repos use ``sources()`` to build the status guard of their conditional
UPDATE, so the database check and the table can never disagree.
"""

from enum import Enum
from typing import Dict, Tuple, Type, TypeVar

from marketplace.errors import Conflict, InvalidInput

S = TypeVar("S", bound=Enum)


class AgentType(str, Enum):
    REQUESTER = "requester"
    PROVIDER = "provider"
    BOTH = "both"


class AvailabilityStatus(str, Enum):
    AVAILABLE = "available"
    BUSY = "busy"
    OFFLINE = "offline"


class RequestStatus(str, Enum):
    PENDING = "pending"
    MATCHED = "matched"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class MatchStatus(str, Enum):
    PROPOSED = "proposed"
    ACCEPTED = "accepted"
    IN_PROGRESS = "in_progress"  # reserved; no event drives it yet
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class TransactionStatus(str, Enum):
    PENDING = "pending"
    ESCROWED = "escrowed"
    VERIFIED = "verified"
    SETTLED = "settled"
    FAILED = "failed"
    REFUNDED = "refunded"


class VerificationKind(str, Enum):
    PROOF = "proof"
    DISPUTE = "dispute"


_R = RequestStatus
_M = MatchStatus
_T = TransactionStatus

REQUEST_TRANSITIONS: Dict[str, Dict[RequestStatus, RequestStatus]] = {
    "match": {_R.PENDING: _R.MATCHED, _R.MATCHED: _R.MATCHED},
    "accept": {_R.MATCHED: _R.IN_PROGRESS},
    "complete": {_R.IN_PROGRESS: _R.COMPLETED},
    "revert": {_R.MATCHED: _R.PENDING, _R.IN_PROGRESS: _R.PENDING},
    "cancel": {_R.PENDING: _R.CANCELLED, _R.MATCHED: _R.CANCELLED},
    "fail": {_R.PENDING: _R.FAILED, _R.MATCHED: _R.FAILED, _R.IN_PROGRESS: _R.FAILED},
}

MATCH_TRANSITIONS: Dict[str, Dict[MatchStatus, MatchStatus]] = {
    "accept": {_M.PROPOSED: _M.ACCEPTED},
    "complete": {_M.ACCEPTED: _M.COMPLETED, _M.IN_PROGRESS: _M.COMPLETED},
    # verification approval completes the match; already completed is fine
    "approve": {_M.ACCEPTED: _M.COMPLETED, _M.IN_PROGRESS: _M.COMPLETED, _M.COMPLETED: _M.COMPLETED},
    "cancel": {_M.PROPOSED: _M.CANCELLED, _M.ACCEPTED: _M.CANCELLED},
    "fail": {_M.PROPOSED: _M.FAILED, _M.ACCEPTED: _M.FAILED, _M.IN_PROGRESS: _M.FAILED},
}

TRANSACTION_TRANSITIONS: Dict[str, Dict[TransactionStatus, TransactionStatus]] = {
    "escrow": {_T.PENDING: _T.ESCROWED},
    "verify": {_T.ESCROWED: _T.VERIFIED},
    "settle": {_T.ESCROWED: _T.SETTLED, _T.VERIFIED: _T.SETTLED},
    "refund": {_T.ESCROWED: _T.REFUNDED, _T.VERIFIED: _T.REFUNDED},
    "fail": {_T.PENDING: _T.FAILED},
}

_TABLES = {
    RequestStatus: REQUEST_TRANSITIONS,
    MatchStatus: MATCH_TRANSITIONS,
    TransactionStatus: TRANSACTION_TRANSITIONS,
}

TERMINAL = {
    RequestStatus: {_R.COMPLETED, _R.FAILED, _R.CANCELLED},
    MatchStatus: {_M.COMPLETED, _M.FAILED, _M.CANCELLED},
    TransactionStatus: {_T.SETTLED, _T.FAILED, _T.REFUNDED},
}


def transition(status_cls: Type[S], current, event: str, entity_id: str = "") -> S:
    """Return the status ``event`` moves ``current`` to, or raise Conflict."""
    table = _TABLES[status_cls]
    if event not in table:
        raise ValueError(f"Unknown {status_cls.__name__} event: {event}")
    cur = status_cls(current)
    nxt = table[event].get(cur)
    if nxt is None:
        allowed = "|".join(s.value for s in table[event])
        raise Conflict(
            f"Cannot {event} {status_cls.__name__[:-6].lower()} in status '{cur.value}'",
            entity_id=entity_id, expected=allowed, actual=cur.value,
        )
    return nxt


def sources(status_cls: Type[S], event: str) -> Tuple[str, ...]:
    """Statuses from which ``event`` is legal, as plain strings for SQL guards."""
    return tuple(s.value for s in _TABLES[status_cls][event])


def is_terminal(status_cls: Type[S], status) -> bool:
    return status_cls(status) in TERMINAL[status_cls]


def parse(status_cls: Type[S], value: str, field: str = "status") -> S:
    """Convert user input to an enum member, raising InvalidInput on junk."""
    try:
        return status_cls(value)
    except ValueError:
        allowed = ", ".join(s.value for s in status_cls)
        raise InvalidInput(f"Invalid {field} '{value}'. Must be one of: {allowed}")
