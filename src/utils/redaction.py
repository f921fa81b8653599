"""Secret redaction for safe logging.

Portal passwords and session cookies must never reach log output or the
per-sync run log shown to users.
"""

import re

_REDACTED = "***REDACTED***"

_SENSITIVE_VALUE_PATTERNS = re.compile(
    r"(?i)(?:password|cookie|api_key|key|token|secret)\s*[=:]\s*\S+"
)


def redact_cookie(cookie: str | None) -> str:
    """Show only cookie names, e.g. 'JSESSIONID=***; HNSAUTH=***'."""
    if not cookie:
        return "<none>"
    names = [part.split("=", 1)[0].strip() for part in cookie.split(";") if "=" in part]
    return "; ".join(f"{name}=***" for name in names) or "<none>"


def sanitize_error_message(msg: str | None, max_length: int = 500) -> str | None:
    """Redact key=value secrets from a free-text message and truncate it.

    Args:
        msg: Message text, possibly embedding request parameters.
        max_length: Longest result; longer text ends in '...'.

    Returns:
        Sanitized message, or None if msg is None.
    """
    if msg is None:
        return None
    sanitized = _SENSITIVE_VALUE_PATTERNS.sub(_REDACTED, msg)
    if len(sanitized) > max_length:
        sanitized = sanitized[:max_length - 3] + "..."
    return sanitized
