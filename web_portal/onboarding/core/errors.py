from __future__ import annotations


class EngineError(Exception):
    http_code = 400
    code = "engine_error"

    def __init__(self, message: str = "", code: str | None = None) -> None:
        super().__init__(message or self.code)
        self.message = message or self.code
        if code:
            self.code = code

    def to_dict(self) -> dict:
        return {"ok": False, "error": self.code, "detail": self.message}


class ValidationError(EngineError):
    http_code = 400
    code = "validation_error"


class NotFound(EngineError):
    http_code = 404
    code = "not_found"


class ConflictError(EngineError):
    http_code = 409
    code = "conflict"


class StaleSnapshotError(ConflictError):
    code = "stale_snapshot"


class PlanExpiredError(EngineError):
    http_code = 410
    code = "plan_expired"


class ResourceExhaustedError(EngineError):
    http_code = 422
    code = "insufficient_resources"


class CollaboratorError(EngineError):
    http_code = 502
    code = "collaborator_error"


class ProvisioningError(CollaboratorError):
    http_code = 503
    code = "address_unavailable"
