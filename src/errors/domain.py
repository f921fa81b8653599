"""Typed domain exceptions for the HughesNet sync engine.

These exceptions give callers a stable contract instead of string
matching on error messages. Request handlers catch the specific types:

Usage:
    try:
        result = await service.sync(user_id, routing, costs)
    except AuthenticationFailed as e:
        return {"error": e.remediation}
"""

from src.errors.registry import get_error


class HughesNetError(Exception):
    """Base exception for all sync engine errors.

    Attributes:
        code: Registry error code (E-XXXX).
        remediation: User-facing next step from the registry.
    """

    code = "E-4000"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        definition = get_error(self.code)
        self.remediation = definition.remediation if definition else ""


class AuthenticationFailed(HughesNetError):
    """Credentials missing, undecryptable, or rejected by the portal.

    Fatal for the current invocation; surfaced as "please reconnect".
    """

    code = "E-5001"

    def __init__(self, reason: str) -> None:
        super().__init__(f"Could not log in to HughesNet: {reason}")
        self.reason = reason


class SessionExpired(HughesNetError):
    """A cached portal session answered with the login form."""

    code = "E-5002"

    def __init__(self, url: str) -> None:
        super().__init__(f"Portal session expired while loading {url}")
        self.url = url


class RequestLimitExceeded(HughesNetError):
    """The per-invocation request budget is exhausted."""

    code = "E-4001"

    def __init__(self, limit: int) -> None:
        super().__init__(f"Request budget of {limit} requests exhausted")
        self.limit = limit


class RoutingLegFailed(HughesNetError):
    """A single route leg could not be resolved."""

    code = "E-3001"

    def __init__(self, origin: str, destination: str) -> None:
        super().__init__(f"No route found from '{origin}' to '{destination}'")
        self.origin = origin
        self.destination = destination
