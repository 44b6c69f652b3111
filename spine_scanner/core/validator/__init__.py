"""
Pre-delivery gate rejecting results that look fabricated.
"""

from .validator import ResultValidator

__all__ = ['ResultValidator']
