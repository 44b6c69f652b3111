"""
Per-module file logging for the scanner.
"""

from .logger import ModuleLogger

__all__ = ['ModuleLogger']
