"""
Cooldown tracking and payload preservation for the rate-limited upload endpoint.
"""

from .governor import RateLimitGovernor

__all__ = ['RateLimitGovernor']
