"""
Spine Scanner
Detects book spines in a shelf photo and extracts bibliographic records from them,
on-device or through a remote extraction service.
"""

__version__ = '0.1.0'

from spine_scanner.core.utils          import Utils
from spine_scanner.core.module_logger  import ModuleLogger
from spine_scanner.core.errors         import (
    ScannerError,
    SegmentationError,
    ExtractionError,
    ValidationError,
    NetworkError
)
from spine_scanner.core.models         import BookSpineInfo, DetectionSource, Job, JobState, SegmentedBook
from spine_scanner.core.line_detector  import GeometricLineDetector, RectangleDetector
from spine_scanner.core.book_segmenter import InstanceMaskSegmenter, SegmentationCoordinator
from spine_scanner.core.text_extractor import TextExtractor
from spine_scanner.core.fuzzy_matcher  import ReferenceMatcher
from spine_scanner.core.extraction     import ExtractionSerializer
from spine_scanner.core.validator      import ResultValidator
from spine_scanner.core.remote         import StreamingUploadClient
from spine_scanner.core.rate_limit     import RateLimitGovernor
from spine_scanner.core.pipeline       import ReviewQueue, ScanPipeline, ScanReport

__all__ = [
    'Utils',
    'ModuleLogger',
    'ScannerError',
    'SegmentationError',
    'ExtractionError',
    'ValidationError',
    'NetworkError',
    'BookSpineInfo',
    'DetectionSource',
    'Job',
    'JobState',
    'SegmentedBook',
    'GeometricLineDetector',
    'RectangleDetector',
    'InstanceMaskSegmenter',
    'SegmentationCoordinator',
    'TextExtractor',
    'ReferenceMatcher',
    'ExtractionSerializer',
    'ResultValidator',
    'StreamingUploadClient',
    'RateLimitGovernor',
    'ReviewQueue',
    'ScanPipeline',
    'ScanReport'
]
