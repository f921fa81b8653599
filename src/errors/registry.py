"""Error code registry with E-XXXX format codes.

This module defines the error code system for the HughesNet sync engine,
organizing errors into categories:
- E-1xxx: Portal data errors
- E-2xxx: Configuration / validation errors
- E-3xxx: Routing errors
- E-4xxx: System/internal errors (request budget, storage)
- E-5xxx: Authentication errors

Each error includes a code, title, message template, and remediation steps.
"""

from dataclasses import dataclass
from enum import Enum


class ErrorCategory(str, Enum):
    """Categories for error codes."""

    DATA = "data"  # E-1xxx: Portal data errors
    VALIDATION = "validation"  # E-2xxx: Configuration errors
    ROUTING = "routing"  # E-3xxx: Routing errors
    SYSTEM = "system"  # E-4xxx: System/internal errors
    AUTH = "auth"  # E-5xxx: Authentication errors


@dataclass
class ErrorCode:
    """Definition of an error code with metadata.

    Attributes:
        code: Error code in E-XXXX format.
        category: Error category for grouping.
        title: Short title for display.
        message_template: Message with {placeholders} for context.
        remediation: Action user should take to resolve.
        is_retryable: Whether the operation can be retried without user action.
    """

    code: str
    category: ErrorCategory
    title: str
    message_template: str
    remediation: str
    is_retryable: bool = False


ERROR_REGISTRY: dict[str, ErrorCode] = {
    "E-1001": ErrorCode(
        code="E-1001",
        category=ErrorCategory.DATA,
        title="Order Page Unparseable",
        message_template="No service address could be read for order {order_id}.",
        remediation="The order stays queued and is retried on the next sync.",
        is_retryable=True,
    ),
    "E-2001": ErrorCode(
        code="E-2001",
        category=ErrorCategory.VALIDATION,
        title="Invalid Pay Configuration",
        message_template="{field} must be a non-negative finite number.",
        remediation="Correct the pay and cost values in your settings.",
    ),
    "E-3001": ErrorCode(
        code="E-3001",
        category=ErrorCategory.ROUTING,
        title="Route Leg Unavailable",
        message_template="No route found from '{origin}' to '{destination}'.",
        remediation="Check the addresses; the leg counts as zero miles until resolved.",
        is_retryable=True,
    ),
    "E-4001": ErrorCode(
        code="E-4001",
        category=ErrorCategory.SYSTEM,
        title="Request Budget Exhausted",
        message_template="The per-sync request budget of {limit} requests was used up.",
        remediation="Run the sync again; it resumes where it stopped.",
        is_retryable=True,
    ),
    "E-5001": ErrorCode(
        code="E-5001",
        category=ErrorCategory.AUTH,
        title="Reconnect Required",
        message_template="Could not log in to HughesNet: {reason}.",
        remediation="Please reconnect your HughesNet account.",
    ),
    "E-5002": ErrorCode(
        code="E-5002",
        category=ErrorCategory.AUTH,
        title="Portal Session Expired",
        message_template="The HughesNet portal session is no longer valid.",
        remediation="The engine logs in again automatically with stored credentials.",
        is_retryable=True,
    ),
}


def get_error(code: str) -> ErrorCode | None:
    """Get error definition by code.

    Args:
        code: Error code in E-XXXX format.

    Returns:
        ErrorCode if found, None otherwise.
    """
    return ERROR_REGISTRY.get(code)


def get_errors_by_category(category: ErrorCategory) -> list[ErrorCode]:
    """Get all errors in a category.

    Args:
        category: The error category to filter by.

    Returns:
        List of ErrorCode objects in the specified category.
    """
    return [e for e in ERROR_REGISTRY.values() if e.category == category]
