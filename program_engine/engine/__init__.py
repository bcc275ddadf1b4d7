"""
Engine Core Package.

This package provides the document store, role resolution, capability
checks and rate limiting used by every service.
"""

from .access import AccessController, IdentityResolver
from .rate_limiter import RATE_LIMITS, RateLimiter, RateLimitStatus
from .role_store import RoleStore
from .state_manager import StateManager

__all__ = [
    "AccessController",
    "IdentityResolver",
    "RATE_LIMITS",
    "RateLimiter",
    "RateLimitStatus",
    "RoleStore",
    "StateManager",
]
