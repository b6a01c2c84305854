"""Domain error taxonomy for the ordering core.

Services raise these exceptions; ``app.main`` maps every ``OrderingError``
to a JSON body of the form ``{"message", "error_code", "data"}`` with the
class's HTTP status code. Pydantic request validation keeps FastAPI's
default 422 body.
"""

from typing import Any, Dict, Optional


class OrderingError(Exception):
    """Base class for every expected failure of the ordering core."""

    status_code = 400

    def __init__(self, error_code: str, message: str, data: Optional[Dict[str, Any]] = None):
        self.error_code = error_code
        self.message = message
        self.data = data or {}
        super().__init__(f"[{error_code}] {message}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "message": self.message,
            "error_code": self.error_code,
            "data": self.data,
        }


class ValidationFailed(OrderingError):
    """Malformed input rejected before any domain logic runs."""

    status_code = 422


class DomainError(OrderingError):
    """A business precondition does not hold (cart empty, too soon, ...)."""

    status_code = 422


class ConflictError(OrderingError):
    """Concurrent modification or a state already consumed. Retryable."""

    status_code = 409


class NotFoundError(OrderingError):
    status_code = 404


class ForbiddenError(OrderingError):
    """The resource exists but belongs to someone else."""

    status_code = 403
