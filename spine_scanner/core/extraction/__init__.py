"""
Single-flight extraction: many concurrent callers, one inference call at a time.
"""

from .serializer import DEFAULT_PROMPT_TEMPLATE, ExtractionSerializer, InferenceResource

__all__ = ['DEFAULT_PROMPT_TEMPLATE', 'ExtractionSerializer', 'InferenceResource']
