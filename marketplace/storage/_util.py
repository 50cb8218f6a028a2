import functools
import inspect
import time
import uuid
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Iterable, Sequence

import aiosqlite

from marketplace.errors import InvalidInput, MarketError, PersistenceError

# DECIMAL(18, 8): 10 integer digits, 8 fractional
MONEY_QUANTUM = Decimal("0.00000001")
MONEY_MAX = Decimal("9999999999.99999999")


def to_money(value: Any) -> Decimal:
    """Coerce input (str, int, float, Decimal) to an 8-place Decimal."""
    if isinstance(value, Decimal):
        d = value
    else:
        try:
            # str() first so floats keep their shortest repr, not binary noise
            d = Decimal(str(value))
        except (InvalidOperation, ValueError):
            raise InvalidInput(f"Invalid monetary amount: {value!r}")
    if not d.is_finite():
        raise InvalidInput(f"Invalid monetary amount: {value!r}")
    if abs(d) > MONEY_MAX:
        raise InvalidInput(f"Monetary amount out of range: {value!r}")
    return d.quantize(MONEY_QUANTUM, rounding=ROUND_HALF_UP)


def money_text(value: Any) -> str:
    return str(to_money(value))


def new_id() -> str:
    return str(uuid.uuid4())


def now() -> float:
    return time.time()


def placeholders(values: Sequence) -> str:
    return ", ".join("?" for _ in values)


def row_dict(cols: Iterable[str], row) -> dict:
    return dict(zip(cols, row))


def persistent(cls):
    """Wrap every public coroutine of a repo so driver errors surface as PersistenceError."""
    for name, fn in list(vars(cls).items()):
        if name.startswith("_") or not inspect.iscoroutinefunction(fn):
            continue
        setattr(cls, name, _wrap(cls.__name__, name, fn))
    return cls


def _wrap(owner: str, name: str, fn):
    @functools.wraps(fn)
    async def wrapper(*args, **kwargs):
        try:
            return await fn(*args, **kwargs)
        except MarketError:
            raise
        except aiosqlite.Error as e:
            raise PersistenceError(f"{owner}.{name} failed: {e}") from e
    return wrapper
