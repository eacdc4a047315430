# consult_dispatch/core/dispatch/errors.py
"""
Typed domain errors for the dispatch engine.

Each error maps to a specific HTTP status code.  The transport layer
catches ``DispatchError`` subtypes and converts them to JSON responses
without embedding dispatch logic in the route handlers.

Only the two public engine operations raise these to a caller; failures
on the asynchronous notify/advance path are absorbed by the engine.
"""
from __future__ import annotations


class DispatchError(Exception):
    """Base class for all dispatch domain errors."""

    status_code: int = 500

    def __init__(self, detail: str = "Internal error"):
        self.detail = detail
        super().__init__(detail)


class ValidationError(DispatchError):
    """Invalid request payload, e.g. missing language (400)."""

    status_code = 400


class InvalidRequestError(DispatchError):
    """Unknown or already resolved dispatch request (400)."""

    status_code = 400

    def __init__(self, detail: str = "Invalid request ID"):
        super().__init__(detail)


class RequestNotFoundError(InvalidRequestError):
    """Request id not present in the store (404)."""

    status_code = 404

    def __init__(self, detail: str = "Request not found"):
        super().__init__(detail)


class NoCandidatesError(DispatchError):
    """No eligible responders for the requested criterion (404)."""

    status_code = 404

    def __init__(self, detail: str = "No doctors available"):
        super().__init__(detail)


class DuplicateRequestError(DispatchError):
    """Request id already present in the store (409)."""

    status_code = 409
