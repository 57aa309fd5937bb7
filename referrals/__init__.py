"""
Referral helpers

Provides the shareable referral code format, collision-retrying code
generation and the caller rate limiter used at the HTTP boundary.
"""

from .codes import generate_referral_code, generate_unique_referral_code
from .rate_limit import RateLimiter, InMemoryRateLimiter

__all__ = [
    "generate_referral_code",
    "generate_unique_referral_code",
    "RateLimiter",
    "InMemoryRateLimiter",
]
