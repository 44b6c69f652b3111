"""
Shared helpers for locating project files and loading configuration.
"""

from .utils import Utils

__all__ = ['Utils']
