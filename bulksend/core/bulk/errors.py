# bulksend/core/bulk/errors.py
"""
Typed domain errors for bulk-send jobs.

Each error maps to a specific HTTP status code.  The transport layer
catches ``BulkJobError`` subtypes and converts them to JSON responses
without embedding business logic in the route handlers.

Recipient-level problems (no phone number, provider rejection) are
NOT errors here: they are recorded on the recipient entry and never
abort a chunk.
"""
from __future__ import annotations


class BulkJobError(Exception):
    """Base class for all bulk job errors."""

    status_code: int = 500

    def __init__(self, detail: str = "Internal error"):
        self.detail = detail
        super().__init__(detail)


class ValidationError(BulkJobError):
    """Invalid input, e.g. unknown message type or empty recipient set (400)."""

    status_code = 400


class AuthorizationError(BulkJobError):
    """Caller does not own the event / did not create the job (403)."""

    status_code = 403


class NotFoundError(BulkJobError):
    """Unknown job or event (404)."""

    status_code = 404


class TransientStoreError(BulkJobError):
    """Store or channel unavailable; the caller may retry ``advance`` (503).

    The job keeps its prior status when this is raised.
    """

    status_code = 503

    def __init__(self, detail: str = "Chunk failed to process, try again"):
        super().__init__(detail)


class ProcessorFatalError(BulkJobError):
    """Invariant violation; the job is marked FAILED and not processed further (500)."""

    status_code = 500
