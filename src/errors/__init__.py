"""Error handling framework for the HughesNet sync engine.

This package provides:
- Error code registry with E-XXXX format codes
- Typed exceptions for the sync error taxonomy

Error categories:
- E-1xxx: Portal data errors
- E-2xxx: Configuration errors
- E-3xxx: Routing errors
- E-4xxx: System/internal errors
- E-5xxx: Authentication errors
"""

from src.errors.domain import (
    AuthenticationFailed,
    HughesNetError,
    RequestLimitExceeded,
    RoutingLegFailed,
    SessionExpired,
)
from src.errors.registry import (
    ERROR_REGISTRY,
    ErrorCategory,
    ErrorCode,
    get_error,
    get_errors_by_category,
)

__all__ = [
    # Registry
    "ErrorCode",
    "ErrorCategory",
    "ERROR_REGISTRY",
    "get_error",
    "get_errors_by_category",
    # Exceptions
    "HughesNetError",
    "AuthenticationFailed",
    "SessionExpired",
    "RequestLimitExceeded",
    "RoutingLegFailed",
]
