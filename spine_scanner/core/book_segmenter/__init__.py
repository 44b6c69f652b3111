"""
Book segmentation: ONNX instance masks first, geometric line fallback second.
"""

from .segmenter import (
    InstanceMaskSegmenter,
    MaskDetection,
    SegmentationCoordinator,
    YOLOModel
)

__all__ = [
    'InstanceMaskSegmenter',
    'MaskDetection',
    'SegmentationCoordinator',
    'YOLOModel'
]
