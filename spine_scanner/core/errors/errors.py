import math

class ScannerError(Exception):
    """
    Base class for all errors raised by the scanner.
    """

# -------------------- Segmentation --------------------

class SegmentationError(ScannerError):
    """
    Raised when no usable book regions could be found in an image.
    """

# -------------------- Extraction --------------------

class ExtractionError(ScannerError):
    """
    Base class for failures of a single extraction turn.
    """

class InferenceFailedError(ExtractionError):
    """
    The inference resource failed while handling one request.
    """
    def __init__(self, reason: str):
        super().__init__(f"Inference failed: {reason}")
        self.reason = reason

class ModelUnavailableError(ExtractionError):
    """
    The inference resource reported itself unavailable.
    """
    def __init__(self, reason: str = 'model unavailable'):
        super().__init__(reason)
        self.reason = reason

class ResourceBusyError(ExtractionError):
    """
    A single-flight resource was entered while another call was still running.
    """

# -------------------- Validation --------------------

class ValidationError(ScannerError):
    """
    Base class for results rejected before delivery.
    """

class InsufficientSourceError(ValidationError):
    """
    The result cannot be trusted given the source it was extracted from.
    """
    def __init__(self, reason: str):
        super().__init__(f"Insufficient source: {reason}")
        self.reason = reason

# -------------------- Network --------------------

class NetworkError(ScannerError):
    """
    Base class for remote extraction service failures.
    """

class RateLimitedError(NetworkError):
    """
    The service answered 429, or a local cooldown is still running.
    """
    def __init__(self, retry_after: float | None = None):
        self.retry_after = retry_after
        if retry_after is None:
            message = "Rate limited - retry later"
        else:
            message = f"Rate limited - retry after {math.ceil(retry_after)}s"
        super().__init__(message)

class TransportFailureError(NetworkError):
    """
    Connection lost, timed out, or stream closed without a terminal event.
    """
    def __init__(self, reason: str):
        super().__init__(f"Transport failure: {reason}")
        self.reason = reason

class ServerError(NetworkError):
    """
    The service answered with an unexpected status code.
    """
    def __init__(self, status: int):
        super().__init__(f"Server error (HTTP {status})")
        self.status = status

class InvalidResponseError(NetworkError):
    """
    The service answered successfully but the body could not be understood.
    """
    def __init__(self, reason: str):
        super().__init__(f"Invalid server response: {reason}")
        self.reason = reason

class StreamFormatError(NetworkError):
    """
    A single server-sent event could not be parsed.
    """

class RemoteJobError(NetworkError):
    """
    The service reported that a job failed, through an error event on its stream.
    """
    def __init__(self, message: str, code: str | None = None, retryable: bool | None = None):
        super().__init__(message)
        self.code      = code
        self.retryable = retryable
