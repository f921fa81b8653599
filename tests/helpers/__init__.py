"""Test helper utilities for sync engine tests."""

from tests.helpers.fake_portal import (
    BASE_URL,
    LOGIN_FORM,
    ExhaustedRouter,
    FakePortal,
    FakeRouter,
    home_page,
    order_page,
)

__all__ = [
    "BASE_URL",
    "LOGIN_FORM",
    "ExhaustedRouter",
    "FakePortal",
    "FakeRouter",
    "home_page",
    "order_page",
]
