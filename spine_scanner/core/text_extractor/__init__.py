"""
Spine image preprocessing and OCR.
"""

from .extractor import OCRLine, TextExtractor, PROCESSING_FUNCTIONS

__all__ = ['OCRLine', 'TextExtractor', 'PROCESSING_FUNCTIONS']
