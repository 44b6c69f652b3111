"""
Reference-database matching of OCR text, exposed as a single-flight inference resource.
"""

from .matcher import BookRecord, ReferenceMatcher

__all__ = ['BookRecord', 'ReferenceMatcher']
