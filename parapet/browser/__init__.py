"""Route and response hooks for patchright (patched Playwright) pages."""

from parapet.browser._datadome import DatadomeHandler, PendingRequest
from parapet.browser._host import (
    RouteSubscription,
    SessionHost,
    Subscription,
    origin_of,
)
from parapet.browser._perimeterx import PerimeterxHandler

__all__ = [
    "DatadomeHandler",
    "PerimeterxHandler",
    "PendingRequest",
    "SessionHost",
    "Subscription",
    "RouteSubscription",
    "origin_of",
]
