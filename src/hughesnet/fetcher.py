"""Budgeted HTTP fetching for one sync invocation.

Every outbound request of a sync run (portal pages, login, routing and
geocoding lookups) goes through ``PortalFetcher.fetch``, which charges the
run's ``RequestBudget`` before touching the network. The budget lives in a
``SyncContext`` created fresh per invocation and never persisted, so each
invocation gets a full allowance and long jobs resume across invocations.
"""

import logging
import random
import threading
from dataclasses import dataclass, field
from http.cookiejar import DefaultCookiePolicy
from typing import Any

import httpx

from src.errors import RequestLimitExceeded
from src.hughesnet.config import USER_AGENTS
from src.utils.redaction import sanitize_error_message

logger = logging.getLogger(__name__)

DEFAULT_REQUEST_LIMIT = 35


def pick_user_agent() -> str:
    """Choose one browser user agent from the fixed pool."""
    return random.choice(USER_AGENTS)


class RequestBudget:
    """Hard ceiling on requests for one invocation.

    ``charge`` checks and increments under one lock, so concurrent callers
    can never push ``used`` past ``limit``.
    """

    def __init__(self, limit: int = DEFAULT_REQUEST_LIMIT) -> None:
        if limit < 0:
            raise ValueError("Request limit must be non-negative")
        self.limit = limit
        self._used = 0
        self._lock = threading.Lock()

    @property
    def used(self) -> int:
        return self._used

    @property
    def remaining(self) -> int:
        return max(self.limit - self._used, 0)

    @property
    def exhausted(self) -> bool:
        return self._used >= self.limit

    def charge(self) -> int:
        """Consume one request slot and return the new count.

        Raises:
            RequestLimitExceeded: If the limit has already been reached.
        """
        with self._lock:
            if self._used >= self.limit:
                raise RequestLimitExceeded(self.limit)
            self._used += 1
            return self._used


@dataclass
class SyncContext:
    """Per-invocation state threaded through every sync stage.

    Attributes:
        user_id: Owner of the run.
        budget: Request budget shared by all stages.
        user_agent: Browser user agent applied to portal requests.
        logs: Human-readable run log returned to the caller.
    """

    user_id: str
    budget: RequestBudget = field(default_factory=RequestBudget)
    user_agent: str = field(default_factory=pick_user_agent)
    logs: list[str] = field(default_factory=list)

    def _record(self, prefix: str, message: str, args: tuple) -> str:
        text = sanitize_error_message(message % args if args else message)
        self.logs.append(f"{prefix}{text}")
        return text

    def info(self, message: str, *args: Any) -> None:
        logger.info("[%s] %s", self.user_id, self._record("", message, args))

    def warn(self, message: str, *args: Any) -> None:
        logger.warning("[%s] %s", self.user_id, self._record("WARN: ", message, args))

    def error(self, message: str, *args: Any) -> None:
        logger.error("[%s] %s", self.user_id, self._record("ERROR: ", message, args))


class _RefuseAllCookies(DefaultCookiePolicy):
    def set_ok(self, cookie, request) -> bool:
        return False

    def return_ok(self, cookie, request) -> bool:
        return False


class PortalFetcher:
    """Issues HTTP requests against a ``SyncContext`` budget.

    No retries happen here; callers decide what a failed request means.
    """

    def __init__(self, client: httpx.AsyncClient, ctx: SyncContext) -> None:
        # Sessions travel in explicit Cookie headers. A jar that refuses every
        # cookie keeps concurrent users from picking up each other's
        # Set-Cookie responses while a request is in flight.
        client.cookies.jar.set_policy(_RefuseAllCookies())
        client.cookies.clear()
        self._client = client
        self.ctx = ctx

    @property
    def budget(self) -> RequestBudget:
        return self.ctx.budget

    async def fetch(
        self,
        url: str,
        method: str = "GET",
        headers: dict[str, str] | None = None,
        data: dict[str, str] | None = None,
        params: dict[str, str] | None = None,
        follow_redirects: bool = False,
    ) -> httpx.Response:
        """Charge the budget, then perform one request.

        Args:
            url: Absolute URL.
            method: HTTP method.
            headers: Extra headers; may override the context user agent.
            data: Form body for POST requests.
            params: Query parameters.
            follow_redirects: Whether httpx should follow redirects itself.

        Returns:
            The httpx response, whatever its status code.

        Raises:
            RequestLimitExceeded: Before any network I/O once the budget is spent.
            httpx.HTTPError: On transport failures.
        """
        count = self.ctx.budget.charge()
        merged = {"User-Agent": self.ctx.user_agent}
        if headers:
            merged.update(headers)
        logger.debug("%s %s (request %d/%d)", method, url, count, self.ctx.budget.limit)
        return await self._client.request(
            method,
            url,
            headers=merged,
            data=data,
            params=params,
            follow_redirects=follow_redirects,
        )
