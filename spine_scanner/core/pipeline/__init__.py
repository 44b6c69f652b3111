"""
End-to-end scan: segmentation, per-book extraction and delivery to the review queue.
"""

from .pipeline import ReviewQueue, ScanPipeline, ScanReport

__all__ = ['ReviewQueue', 'ScanPipeline', 'ScanReport']
