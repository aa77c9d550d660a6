"""Application service helpers."""

from .errors import ChatError, ConsistencyError, NotFound, PermissionDenied, ValidationFailed

__all__ = [
    "ChatError",
    "ConsistencyError",
    "NotFound",
    "PermissionDenied",
    "ValidationFailed",
]
