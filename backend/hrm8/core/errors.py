# backend/hrm8/core/errors.py
from __future__ import annotations

from typing import Any, Optional


class EngineError(Exception):
    """
    Base for every error the engine surfaces to callers.

    Routers never catch these; the handler registered in main.py renders them as
    {"detail": {"code": ..., "message": ..., "retryable": ...}} with `status_code`.
    """

    code: str = "engine_error"
    status_code: int = 400
    retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        details: Optional[dict[str, Any]] = None,
        retryable: Optional[bool] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}
        if retryable is not None:
            self.retryable = retryable

    def to_detail(self) -> dict[str, Any]:
        detail: dict[str, Any] = {
            "code": self.code,
            "message": self.message,
            "retryable": self.retryable,
        }
        detail.update(self.details)
        return detail


class InvalidTransitionError(EngineError):
    code = "invalid_transition"
    status_code = 409


class InvalidStateError(EngineError):
    # e.g. a second conversion request while one is still PENDING
    code = "invalid_state"
    status_code = 409


class AlreadyClaimedError(EngineError):
    # Caller must re-fetch its available balance and retry; never retried server-side.
    code = "already_claimed"
    status_code = 409
    retryable = True


class DuplicatePeriodError(EngineError):
    code = "duplicate_period"
    status_code = 409


class ValidationFailedError(EngineError):
    code = "validation_failed"
    status_code = 422


class NotFoundError(EngineError):
    code = "not_found"
    status_code = 404


class ForbiddenError(EngineError):
    code = "forbidden"
    status_code = 403


class ConflictError(EngineError):
    # Optimistic version mismatch or a uniqueness collision on commit.
    code = "conflict"
    status_code = 409
    retryable = True


class ExternalDependencyError(EngineError):
    code = "external_dependency"
    status_code = 502
    retryable = True
