"""
Exception hierarchy shared by every stage of the scanning pipeline.
"""

from .errors import (
    ScannerError,
    SegmentationError,
    ExtractionError,
    InferenceFailedError,
    ModelUnavailableError,
    ResourceBusyError,
    ValidationError,
    InsufficientSourceError,
    NetworkError,
    RateLimitedError,
    TransportFailureError,
    ServerError,
    InvalidResponseError,
    StreamFormatError,
    RemoteJobError
)

__all__ = [
    'ScannerError',
    'SegmentationError',
    'ExtractionError',
    'InferenceFailedError',
    'ModelUnavailableError',
    'ResourceBusyError',
    'ValidationError',
    'InsufficientSourceError',
    'NetworkError',
    'RateLimitedError',
    'TransportFailureError',
    'ServerError',
    'InvalidResponseError',
    'StreamFormatError',
    'RemoteJobError'
]
