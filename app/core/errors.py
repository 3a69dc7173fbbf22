"""
Workflow Errors
===============
One exception per failure kind. All are raised before any mutation
is committed, so callers can fix the input and retry.
"""

from typing import Optional, Sequence


class WorkflowError(Exception):
    kind = "WorkflowError"
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def details(self) -> dict:
        return {}


class Unauthorized(WorkflowError):
    kind = "Unauthorized"
    status_code = 401


class NotFound(WorkflowError):
    kind = "NotFound"
    status_code = 404


class InvalidState(WorkflowError):
    kind = "InvalidState"
    status_code = 400


class InvalidStep(WorkflowError):
    kind = "InvalidStep"
    status_code = 400


class Forbidden(WorkflowError):
    kind = "Forbidden"
    status_code = 403


class InvalidInput(WorkflowError):
    kind = "InvalidInput"
    status_code = 400


class ConcurrentModification(WorkflowError):
    """Another transition committed first; reload and try again."""

    kind = "ConcurrentModification"
    status_code = 409


class MissingFields(WorkflowError):
    kind = "MissingFields"
    status_code = 400

    def __init__(self, missing: Sequence[str], step: int, step_name: Optional[str]):
        super().__init__("Missing required fields")
        self.missing = list(missing)
        self.step = step
        self.step_name = step_name

    def details(self) -> dict:
        return {"missing": self.missing, "step": self.step, "step_name": self.step_name}
