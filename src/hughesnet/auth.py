"""Portal login and session lifecycle.

State machine per user::

    NO_SESSION -> LOGGING_IN -> AUTHENTICATED -> EXPIRED | DISCONNECTED -> NO_SESSION

Credentials are stored encrypted (AES-256-GCM envelope bound to their KV
key); the session cookie is cached in the KV store with a 48h TTL. An
authenticated fetch that lands on the login form drops the cached cookie,
logs in once more and retries.
"""

import logging
import re
from enum import Enum
from urllib.parse import urljoin

import httpx

from src.errors import AuthenticationFailed, RequestLimitExceeded, SessionExpired
from src.hughesnet.config import PortalConfig
from src.hughesnet.fetcher import PortalFetcher
from src.services.credential_encryption import (
    CredentialDecryptionError,
    build_credential_record,
    decrypt_credentials,
    encrypt_credentials,
)
from src.services.kv_store import KeyValueStore
from src.utils.redaction import redact_cookie

logger = logging.getLogger(__name__)

PASSWORD_FIELD_MARKER = 'name="Password"'
LOGIN_PAGE_MARKER = "login.jsp"

# A comma starts a new cookie only when a fresh name= token follows it,
# so "Expires=Wed, 21 Oct 2015 07:28:00 GMT" stays in one piece.
_COOKIE_BOUNDARY = re.compile(r",(?=\s*[^;,=\s]+=)")


def credential_key(user_id: str) -> str:
    return f"hns:cred:{user_id}"


def session_key(user_id: str) -> str:
    return f"hns:session:{user_id}"


def order_db_key(user_id: str) -> str:
    return f"hns:db:{user_id}"


class SessionState(str, Enum):
    """Where a user's portal session currently stands."""

    NO_SESSION = "no_session"
    LOGGING_IN = "logging_in"
    AUTHENTICATED = "authenticated"
    EXPIRED = "expired"
    DISCONNECTED = "disconnected"


def extract_cookie(header_values: list[str] | str | None) -> str | None:
    """Reduce Set-Cookie header values to a Cookie request header.

    Args:
        header_values: Raw Set-Cookie values; several cookies may be folded
            into one value separated by commas.

    Returns:
        ``"a=1; b=2"`` style string, or None when no cookie was set.
    """
    if not header_values:
        return None
    if isinstance(header_values, str):
        header_values = [header_values]

    pairs = []
    for part in _COOKIE_BOUNDARY.split(", ".join(header_values)):
        pair = part.split(";", 1)[0].strip()
        if "=" in pair:
            pairs.append(pair)
    return "; ".join(pairs) or None


def is_login_form(html: str) -> bool:
    """True when an authenticated page came back as the login form."""
    return PASSWORD_FIELD_MARKER in html


def is_login_page(html: str) -> bool:
    """Stricter check used right after connecting."""
    return PASSWORD_FIELD_MARKER in html or LOGIN_PAGE_MARKER in html


class SessionManager:
    """Owns stored credentials and the cached portal session for each user."""

    def __init__(
        self,
        kv_store: KeyValueStore,
        encryption_key: bytes,
        portal: PortalConfig | None = None,
    ) -> None:
        self._kv = kv_store
        self._key = encryption_key
        self._portal = portal or PortalConfig()
        self._states: dict[str, SessionState] = {}

    def state(self, user_id: str) -> SessionState:
        return self._states.get(user_id, SessionState.NO_SESSION)

    def _set_state(self, user_id: str, state: SessionState) -> None:
        previous = self.state(user_id)
        self._states[user_id] = state
        if previous != state:
            logger.debug("Session %s: %s -> %s", user_id, previous.value, state.value)

    async def connect(
        self,
        fetcher: PortalFetcher,
        user_id: str,
        username: str,
        password: str,
    ) -> bool:
        """Store credentials, log in and confirm the home page loads.

        Returns:
            True when the portal accepted the login, False on any failure.
        """
        record = build_credential_record(username, password, self._portal.login_url)
        key = credential_key(user_id)
        await self._kv.put(key, encrypt_credentials(record, self._key, aad=key))

        try:
            cookie = await self.login(fetcher, user_id, username, password)
            if not cookie:
                return False
            response = await fetcher.fetch(self._portal.home_url, headers={"Cookie": cookie})
        except (RequestLimitExceeded, httpx.HTTPError) as e:
            fetcher.ctx.error("Connect failed: %s", e)
            self._set_state(user_id, SessionState.NO_SESSION)
            return False

        if is_login_page(response.text):
            fetcher.ctx.error("Portal rejected the login; home page shows the login form")
            await self._kv.delete(session_key(user_id))
            self._set_state(user_id, SessionState.NO_SESSION)
            return False

        fetcher.ctx.info("Connected to HughesNet portal")
        return True

    async def login(
        self,
        fetcher: PortalFetcher,
        user_id: str,
        username: str,
        password: str,
    ) -> str | None:
        """Post the login form and cache the resulting session cookie.

        Returns:
            Cookie header value, or None when the portal set no cookie.

        Raises:
            RequestLimitExceeded: If the budget runs out mid-login.
        """
        self._set_state(user_id, SessionState.LOGGING_IN)
        login_url = self._portal.login_url
        form = {
            "User": username,
            "Password": password,
            "Submit": "Log In",
            "ScreenSize": "MED",
            "AuthSystem": "HNS",
        }
        try:
            response = await fetcher.fetch(login_url, method="POST", data=form)
            cookie = extract_cookie(response.headers.get_list("set-cookie"))

            if not cookie and response.is_redirect:
                location = response.headers.get("location") or self._portal.home_path
                next_url = urljoin(self._portal.base_url.rstrip("/") + "/", location)
                hop = await fetcher.fetch(next_url, headers={"Referer": login_url})
                cookie = extract_cookie(hop.headers.get_list("set-cookie"))
        except httpx.HTTPError as e:
            fetcher.ctx.error("Login request failed: %s", e)
            self._set_state(user_id, SessionState.NO_SESSION)
            return None

        if not cookie:
            fetcher.ctx.error("Login failed: portal returned no session cookie")
            self._set_state(user_id, SessionState.NO_SESSION)
            return None

        await self._kv.put(session_key(user_id), cookie, ttl_seconds=self._portal.session_ttl_seconds)
        self._set_state(user_id, SessionState.AUTHENTICATED)
        logger.info("Logged in user %s (cookies: %s)", user_id, redact_cookie(cookie))
        return cookie

    async def ensure_session(
        self,
        fetcher: PortalFetcher,
        user_id: str,
        force_refresh: bool = False,
    ) -> str | None:
        """Return a usable session cookie, logging in again when needed.

        Returns:
            Cookie string, or None when no credentials are stored or they
            cannot be decrypted.
        """
        if not force_refresh:
            cached = await self._kv.get(session_key(user_id))
            if cached:
                self._set_state(user_id, SessionState.AUTHENTICATED)
                return cached

        key = credential_key(user_id)
        encrypted = await self._kv.get(key)
        if not encrypted:
            fetcher.ctx.warn("No stored HughesNet credentials")
            return None
        try:
            credentials = decrypt_credentials(encrypted, self._key, aad=key)
        except CredentialDecryptionError as e:
            fetcher.ctx.error("Stored credentials could not be decrypted: %s", e)
            return None

        return await self.login(
            fetcher, user_id, credentials["username"], credentials["password"]
        )

    def _require_session_page(self, url: str, html: str) -> str:
        if is_login_form(html):
            raise SessionExpired(url)
        return html

    async def fetch_authenticated(
        self,
        fetcher: PortalFetcher,
        user_id: str,
        url: str,
        cookie: str,
    ) -> tuple[str, str]:
        """GET a portal page with the session cookie, re-logging in once.

        Returns:
            Tuple of (page html, cookie that produced it).

        Raises:
            AuthenticationFailed: If re-login fails or still yields the login form.
            RequestLimitExceeded: If the budget runs out.
            httpx.HTTPError: On transport failures.
        """
        response = await fetcher.fetch(url, headers={"Cookie": cookie})
        try:
            return self._require_session_page(url, response.text), cookie
        except SessionExpired as e:
            fetcher.ctx.warn("%s; logging in again", e)
            self._set_state(user_id, SessionState.EXPIRED)

        await self._kv.delete(session_key(user_id))
        fresh = await self.ensure_session(fetcher, user_id, force_refresh=True)
        if not fresh:
            raise AuthenticationFailed("re-login after session expiry failed")

        response = await fetcher.fetch(url, headers={"Cookie": fresh})
        try:
            return self._require_session_page(url, response.text), fresh
        except SessionExpired as e:
            self._set_state(user_id, SessionState.NO_SESSION)
            raise AuthenticationFailed("portal still shows the login form after re-login") from e

    async def disconnect(self, user_id: str) -> None:
        """Forget the session, the stored credentials and the order database."""
        self._set_state(user_id, SessionState.DISCONNECTED)
        for key in (session_key(user_id), credential_key(user_id), order_db_key(user_id)):
            await self._kv.delete(key)
        self._set_state(user_id, SessionState.NO_SESSION)
        logger.info("Disconnected user %s", user_id)
