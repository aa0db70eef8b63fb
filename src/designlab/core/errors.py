"""Exception hierarchy for the Design Lab core.

Synchronous errors (validation, access, conflicts) propagate to the caller
and are turned into HTTP responses by :mod:`designlab.api.main`.  Provider
and compositing errors are raised inside the detached generation task and
are absorbed into persisted request state by the orchestrator.
"""

from __future__ import annotations


class DesignLabError(Exception):
    """Base class for all Design Lab errors.

    Attributes:
        message: Human-readable message safe to show to API clients.
        status_code: HTTP status the API layer maps this error to.
    """

    status_code: int = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(DesignLabError):
    """A required field is missing or a value is out of range."""

    status_code = 400


class ForbiddenError(DesignLabError):
    """The caller does not own the resource and is not an admin."""

    status_code = 403


class NotFoundError(DesignLabError):
    """The referenced project, version, layer or request does not exist."""

    status_code = 404


class ConflictError(DesignLabError):
    """The operation is not legal in the resource's current state."""

    status_code = 409


class ProviderError(DesignLabError):
    """The generation provider failed to produce an image."""

    status_code = 502


class CompositingError(DesignLabError):
    """A template or design image could not be fetched or composited."""


class InvalidTransitionError(DesignLabError):
    """A generation request was driven through an illegal state transition."""

    status_code = 409
