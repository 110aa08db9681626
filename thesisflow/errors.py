# thesisflow/errors.py
from __future__ import annotations
from typing import Any, Dict, Optional


class WorkflowError(Exception):
    """
    Base error for every workflow operation.

    - `status_code` is the HTTP class the adapter maps the error to
    - `code` is a stable machine-readable identifier
    - `details` enumerates which sub-condition failed so a client can act on it
    """
    status_code = 400
    code = "workflow_error"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = dict(details or {})

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.message, "code": self.code, "details": self.details}


class ValidationError(WorkflowError):
    """Malformed or incomplete input (no role ids, partial file pair, ...)."""
    status_code = 400
    code = "validation_error"


class NotFoundError(WorkflowError):
    status_code = 404
    code = "not_found"


class AuthorizationError(WorkflowError):
    """Faculty/department scoping or role-hierarchy violation."""
    status_code = 403
    code = "forbidden"


class PrecheckFailedError(WorkflowError):
    """A gate (plagiarism, predecessor signature) is not satisfied yet."""
    status_code = 400
    code = "precheck_failed"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None,
                 required_action: Optional[str] = None):
        super().__init__(message, details)
        self.required_action = required_action
        if required_action:
            self.details.setdefault("required_action", required_action)


class PreconditionError(PrecheckFailedError):
    """The student side of the workflow has not caught up (e.g. unsigned submission)."""
    code = "precondition_failed"


class ConflictError(WorkflowError):
    status_code = 409
    code = "conflict"


class StorageError(WorkflowError):
    """Filesystem or repository I/O failure. Never retried by the engine."""
    status_code = 500
    code = "storage_error"
