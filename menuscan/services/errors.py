"""
Error taxonomy for the menu analysis pipeline.

Every failure surfaced to a caller is an AnalysisError carrying an ErrorKind.
User-facing messages come from the kind only; the exception message is for
local diagnostics and is never shown to end users.
"""

from enum import Enum
from typing import Optional


class ErrorKind(Enum):
    """Broad classes of pipeline failure."""
    CONFIGURATION = "configuration"
    TRANSPORT = "transport"
    RATE_LIMIT = "rate_limit"
    NETWORK = "network"
    PARSING = "parsing"
    CONFIDENCE_TOO_LOW = "confidence_too_low"
    CANCELLED = "cancelled"
    BUSY = "busy"
    IMAGE = "image"


USER_MESSAGES = {
    ErrorKind.CONFIGURATION: "The menu analysis service is not configured.",
    ErrorKind.TRANSPORT: "A secure connection to the analysis service could not be established.",
    ErrorKind.RATE_LIMIT: "Too many requests. Please wait a moment and try again.",
    ErrorKind.NETWORK: "The analysis service could not be reached. Please try again.",
    ErrorKind.PARSING: "The menu could not be read. Please retake the photo.",
    ErrorKind.CONFIDENCE_TOO_LOW: "The menu text was not clear enough. Please retake the photo with better lighting.",
    ErrorKind.CANCELLED: "The analysis was cancelled.",
    ErrorKind.BUSY: "Another menu is already being analyzed.",
    ErrorKind.IMAGE: "The photo could not be processed. Please try a different image.",
}


class AnalysisError(Exception):
    """Base class for all pipeline errors."""

    kind = ErrorKind.NETWORK
    recoverable = False

    def __init__(self, message: str = "", *, cause: Optional[BaseException] = None):
        super().__init__(message or self.__class__.__name__)
        self.cause = cause

    @property
    def user_message(self) -> str:
        return USER_MESSAGES[self.kind]

    @property
    def error_code(self) -> str:
        return self.kind.value.upper()


# Configuration

class ServiceNotConfiguredError(AnalysisError):
    kind = ErrorKind.CONFIGURATION


# Transport security: fail closed, never retried

class SecurityError(AnalysisError):
    kind = ErrorKind.TRANSPORT


class InsecureTransportError(SecurityError):
    """Scheme, host, path, headers or body size rejected."""


class CertificatePinningError(SecurityError):
    """The peer certificate did not match the pinned set."""


class ResponseValidationError(SecurityError):
    """Response content-type or size rejected."""


# Rate limiting

class RateLimitExceededError(AnalysisError):
    """The local sliding-window limiter refused the request before sending."""
    kind = ErrorKind.RATE_LIMIT


# HTTP status errors

class HTTPStatusError(AnalysisError):
    status_code = 0

    def __init__(self, message: str = "", *, status_code: Optional[int] = None,
                 cause: Optional[BaseException] = None):
        super().__init__(message, cause=cause)
        if status_code is not None:
            self.status_code = status_code


class BadRequestError(HTTPStatusError):
    status_code = 400


class AuthenticationFailedError(HTTPStatusError):
    kind = ErrorKind.CONFIGURATION
    status_code = 401


class ForbiddenError(HTTPStatusError):
    kind = ErrorKind.CONFIGURATION
    status_code = 403


class RemoteRateLimitedError(HTTPStatusError):
    kind = ErrorKind.RATE_LIMIT
    recoverable = True
    status_code = 429


class ServerError(HTTPStatusError):
    recoverable = True
    status_code = 500


class UnexpectedStatusError(HTTPStatusError):
    pass


# Network

class NetworkTimeoutError(AnalysisError):
    """A single request exceeded its socket timeout."""
    recoverable = True


class NetworkUnavailableError(AnalysisError):
    """No connectivity to the inference endpoint."""


class MaxRetriesExceededError(AnalysisError):
    """Recoverable failures persisted through every retry."""

    def __init__(self, message: str = "", *, attempts: int = 0,
                 cause: Optional[BaseException] = None):
        super().__init__(message, cause=cause)
        self.attempts = attempts


class AnalysisTimeoutError(AnalysisError):
    """The whole inference call did not finish within the configured timeout."""


# Response handling

class ResponseParsingError(AnalysisError):
    kind = ErrorKind.PARSING


class LowConfidenceError(AnalysisError):
    kind = ErrorKind.CONFIDENCE_TOO_LOW

    def __init__(self, confidence: float, minimum: float):
        super().__init__(f"Confidence {confidence:.2f} below minimum {minimum:.2f}")
        self.confidence = confidence
        self.minimum = minimum

    @property
    def user_message(self) -> str:
        return f"{USER_MESSAGES[self.kind]} (confidence {int(self.confidence * 100)}%)"


# Orchestration

class AnalysisCancelledError(AnalysisError):
    kind = ErrorKind.CANCELLED


class AnalyzerBusyError(AnalysisError):
    kind = ErrorKind.BUSY


# Image optimization

class ImageError(AnalysisError):
    kind = ErrorKind.IMAGE


class InvalidImageDataError(ImageError):
    pass


class ImageProcessingFailedError(ImageError):
    pass


class UnsafeContentError(AnalysisError):
    """Generated text failed the content-safety check."""
    kind = ErrorKind.PARSING
