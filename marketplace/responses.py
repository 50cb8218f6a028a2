"""Success and error envelopes shared by every endpoint."""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional

from fastapi.encoders import jsonable_encoder

# Money leaves the API as exact decimal strings
_ENCODERS = {Decimal: str}


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def format_response(data: Any = None, message: str = "Success", status_code: int = 200) -> dict:
    return {
        "success": 200 <= status_code < 300,
        "statusCode": status_code,
        "message": message,
        "data": jsonable_encoder(data, custom_encoder=_ENCODERS),
        "timestamp": _timestamp(),
    }


def format_error(message: str, status_code: int = 400, error: Optional[Any] = None) -> dict:
    return {
        "success": False,
        "statusCode": status_code,
        "message": message,
        "error": jsonable_encoder(error, custom_encoder=_ENCODERS),
        "timestamp": _timestamp(),
    }
