"""
Rate limiting package for the Gateway.

Holds the fixed-window limiter that enforces the hourly request budget of
API-key callers, sized by their effective tier.
"""

from .fixed_window import FixedWindowRateLimiter, RateLimitDecision

__all__ = ["FixedWindowRateLimiter", "RateLimitDecision"]
