"""Error types raised by the sail number detection pipeline."""

from typing import Optional


class SailScanError(Exception):
    """Base class for all sailcam errors."""


class ValidationError(SailScanError):
    """Input image is unusable (empty or undecodable payload)."""


class ServiceError(SailScanError):
    """The external OCR service call failed (network, auth, or a Failed operation).

    Args:
        message: Human readable description.
        status: HTTP status code, when the failure came from an HTTP response.
    """

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class PollTimeoutError(SailScanError, TimeoutError):
    """Polling budget exhausted (or the scan was cancelled) before the OCR finished."""


class EmptyResultError(SailScanError):
    """OCR succeeded but returned no text."""


class NoTextDetectedError(SailScanError):
    """Every image variant ran, none produced a qualifying result."""


class ScanInProgressError(SailScanError):
    """A scan was requested while the session already owns one in flight."""
