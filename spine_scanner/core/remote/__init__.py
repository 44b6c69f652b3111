"""
Remote extraction: upload, server-sent event stream, cleanup.
"""

from .sse    import RawEvent, SSEDecoder, parse_event
from .client import StreamingUploadClient, parse_retry_after

__all__ = ['RawEvent', 'SSEDecoder', 'parse_event', 'StreamingUploadClient', 'parse_retry_after']
