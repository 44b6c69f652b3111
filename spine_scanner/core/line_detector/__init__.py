"""
Geometric fallback segmentation: spine-like rectangles to vertical boundary lines to regions.
"""

from .detector import GeometricLineDetector, RectangleDetector

__all__ = ['GeometricLineDetector', 'RectangleDetector']
