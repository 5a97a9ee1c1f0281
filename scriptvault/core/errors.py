"""Error taxonomy shared by the approval and version services.

Every error is an ``HTTPException`` so services can raise them directly and
FastAPI renders the matching status code without per-router translation.
"""

from typing import Optional

from fastapi import HTTPException


class ScriptVaultError(HTTPException):
    status_code = 500

    def __init__(self, detail: str):
        super().__init__(status_code=self.status_code, detail=detail)

    def __str__(self) -> str:
        return str(self.detail)


class NotFoundError(ScriptVaultError):
    status_code = 404

    def __init__(self, resource: str, resource_id: str):
        self.resource = resource
        self.resource_id = resource_id
        super().__init__(f"{resource} not found: {resource_id}")


class ForbiddenError(ScriptVaultError):
    status_code = 403

    def __init__(self, permission: str, detail: Optional[str] = None):
        self.permission = permission
        super().__init__(detail or f"Permission denied: {permission} required")


class StaleStateError(ScriptVaultError):
    """A transition was attempted from a state the record is no longer in."""

    status_code = 409

    def __init__(self, resource_id: str, expected: str, actual: str):
        self.resource_id = resource_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"{resource_id} is {actual}, expected {expected}; refresh and retry"
        )


class ValidationError(ScriptVaultError):
    status_code = 400


class ExecutionError(ScriptVaultError):
    """The approval committed but applying it to the script record failed."""

    status_code = 500

    def __init__(self, request_id: str, operation_type: str, reason: str):
        self.request_id = request_id
        self.operation_type = operation_type
        self.reason = reason
        super().__init__(f"Approved {operation_type} for {request_id} failed to apply: {reason}")
