# osiris/core/errors.py
"""
Typed domain errors.

Each error carries an HTTP status code. The HTTP app registers one exception
handler for ``OsirisError`` so services raise these without knowing about
the transport layer.
"""
from __future__ import annotations


class OsirisError(Exception):
    """Base class for all domain errors."""

    status_code: int = 500

    def __init__(self, detail: str = "Internal error"):
        self.detail = detail
        super().__init__(detail)


class ValidationError(OsirisError):
    """Invalid request payload (400)."""

    status_code = 400


class NotFoundError(OsirisError):
    """Resource not found (404)."""

    status_code = 404


class ConflictError(OsirisError):
    """Conflicting state, e.g. a job claimed by someone else first (409)."""

    status_code = 409


class DeliveryError(OsirisError):
    """
    An outbound message or call could not be delivered.

    ``retryable`` tells the caller whether trying again later can help
    (rate limits, provider 5xx, network) or not (bad token, blocked bot,
    invalid phone number).
    """

    status_code = 502

    def __init__(self, detail: str, *, retryable: bool = False):
        super().__init__(detail)
        self.retryable = retryable
