"""
Data classes passed between the segmentation, extraction and remote stages.
"""

from .models import (
    Rect,
    EdgeLine,
    DetectionSource,
    SegmentedBook,
    BookSpineInfo,
    CONFIDENCE_SCORES,
    confidence_level,
    ExtractionRequest,
    JobState,
    JOB_TRANSITIONS,
    Job,
    UploadTicket,
    ProgressEvent,
    ResultEvent,
    ErrorEvent,
    StreamEvent,
    PreservedPayload,
    RateLimitState
)

__all__ = [
    'Rect',
    'EdgeLine',
    'DetectionSource',
    'SegmentedBook',
    'BookSpineInfo',
    'CONFIDENCE_SCORES',
    'confidence_level',
    'ExtractionRequest',
    'JobState',
    'JOB_TRANSITIONS',
    'Job',
    'UploadTicket',
    'ProgressEvent',
    'ResultEvent',
    'ErrorEvent',
    'StreamEvent',
    'PreservedPayload',
    'RateLimitState'
]
