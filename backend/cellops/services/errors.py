"""Error kinds raised by the process execution engine."""

from __future__ import annotations

# purpose: shared exception hierarchy mapped onto HTTP status codes by the routers
# status: active


class ProcessEngineError(RuntimeError):
    """Base error for process execution and lineage operations."""


class ValidationError(ProcessEngineError):
    """Raised when an input is malformed or a required gating input is missing."""


class ReferenceNotFound(ValidationError):
    """Raised when a template, culture, container, step or deviation cannot be located."""

    def __init__(self, kind: str, ref: object):
        self.kind = kind
        self.ref = ref
        super().__init__(f"{kind} {ref} not found")


class ConflictError(ProcessEngineError):
    """Raised when a transition is out of order or the target is already terminal."""


class RepositoryError(ProcessEngineError):
    """Raised when persistence fails; the surrounding transaction must be abandoned."""


class NotificationError(ProcessEngineError):
    """Raised by the notifier transport. Never propagated to API callers."""


class PermissionDenied(ProcessEngineError):
    """Raised when the acting user lacks the role an operation requires."""
