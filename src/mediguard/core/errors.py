"""Error taxonomy shared by the decision, schedule and dispatch layers.

``ExpectedNotRegistered`` and partial dispatch failures are deliberately
absent: they are result values (a verdict kind and a dispatch status).
"""

from __future__ import annotations


class MediGuardError(Exception):
    """Base exception for MediGuard core operations."""


class ValidationError(MediGuardError):
    """Malformed input. Rejected immediately and never retried."""


class NotFoundError(MediGuardError):
    """Unknown schedule, pill or user."""


class PermissionDeniedError(MediGuardError):
    """Caller's role does not allow the operation on this record."""


class ExtractionError(MediGuardError):
    """The feature extractor could not decode or process the image."""


class TransientExternalFailure(MediGuardError):
    """An external collaborator timed out or was unavailable.

    Eligible for a bounded retry by the calling layer.
    """


class ExtractorUnavailableError(TransientExternalFailure):
    """Feature extractor timed out or could not be reached."""


class TransportUnavailableError(TransientExternalFailure):
    """Push transport timed out or could not be reached."""
