"""
errors.py - Failure taxonomy for marketplace operations.

Every controller either returns a result or raises one of these. Each kind
carries the HTTP status the REST layer reports it with.
"""

from typing import Optional


class MarketError(Exception):
    """Base class for all marketplace failures."""

    status_code = 500

    def __init__(self, message: str, **context):
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> dict:
        return {"kind": type(self).__name__, **self.context}


class NotFound(MarketError):
    status_code = 404

    def __init__(self, entity: str, entity_id: str):
        super().__init__(f"{entity} not found", entity=entity, entity_id=entity_id)
        self.entity = entity
        self.entity_id = entity_id


class Unauthorized(MarketError):
    """Caller is authenticated but is not the principal the operation requires."""

    status_code = 403


class InvalidInput(MarketError):
    status_code = 400


class Conflict(MarketError):
    """A state transition collided with the record's current status."""

    status_code = 409

    def __init__(
        self,
        message: str,
        entity_id: str = "",
        expected: Optional[str] = None,
        actual: Optional[str] = None,
    ):
        super().__init__(message, entity_id=entity_id, expected=expected, actual=actual)
        self.entity_id = entity_id
        self.expected = expected
        self.actual = actual


class ExternalServiceError(MarketError):
    """The payment processor failed or answered with something unexpected."""

    status_code = 500


class PaymentNotSucceeded(ExternalServiceError):
    status_code = 402

    def __init__(self, intent_id: str, status: str):
        super().__init__(
            f"Payment not succeeded. Status: {status}",
            intent_id=intent_id, status=status,
        )
        self.intent_id = intent_id
        self.status = status


class PersistenceError(MarketError):
    status_code = 500


class PartialFailure(MarketError):
    """A multi-step operation committed some steps and failed on a later one.

    ``completed`` names the step(s) that are durable; reconciliation picks up
    from there.
    """

    status_code = 500

    def __init__(self, message: str, completed: str, pending: str, **context):
        super().__init__(message, completed=completed, pending=pending, **context)
        self.completed = completed
        self.pending = pending
