"""
Typed domain errors for the dispatch core.

Each error carries the HTTP status a transport layer should answer with.
A transport catches ``DispatchError`` subtypes and converts them to responses
without embedding business logic in route handlers.
"""
from __future__ import annotations


class DispatchError(Exception):
    """Base class for all caller-correctable dispatch errors."""

    status_code: int = 500

    def __init__(self, detail: str = "Internal error"):
        self.detail = detail
        super().__init__(detail)


class ValidationError(DispatchError):
    """Bad input shape or range (400)."""

    status_code = 400


class RateLimitError(DispatchError):
    """Too many urgent requests for one client (429)."""

    status_code = 429

    def __init__(self, detail: str = "Rate limit exceeded", retry_after: int | None = None):
        self.retry_after = retry_after
        super().__init__(detail)


class NotFoundError(DispatchError):
    """Unknown request or professional (404)."""

    status_code = 404


class NotAuthorizedError(DispatchError):
    """Caller is not a participant of the request (403)."""

    status_code = 403


class NotOwnerError(NotAuthorizedError):
    """Only the client who created the request may do this (403)."""


class NotCandidateError(DispatchError):
    """Accept/reject by a professional without an open candidacy (403)."""

    status_code = 403


class TerminalStateError(DispatchError):
    """Request is already completed or cancelled (409)."""

    status_code = 409


class InvalidTransitionError(DispatchError):
    """Status change not allowed from the current state (409)."""

    status_code = 409
