from __future__ import annotations


class WorkflowError(Exception):
    pass


class ValidationError(WorkflowError):
    def __init__(self, message: str, errors: dict[str, str] | None = None) -> None:
        super().__init__(message)
        self.errors: dict[str, str] = errors or {}

    @classmethod
    def for_field(cls, field: str, message: str) -> ValidationError:
        return cls(message, {field: message})


class NotFoundError(WorkflowError):
    pass


class AuthorizationError(WorkflowError):
    pass
