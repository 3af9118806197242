"""parapet -- DataDome and PerimeterX challenge handling for patchright pages."""

import logging
from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("parapet-py")
except PackageNotFoundError:
    __version__ = "0.0.0"

from parapet._config import BrowserInitConfig, Config
from parapet._errors import (
    BlockedVisitor,
    ConfigError,
    MalformedCookie,
    ParapetError,
    RetriesExceeded,
    SetupFailed,
    SolveFailed,
    SolverError,
)
from parapet._solver import CookieResult, PxResult, SolverClient
from parapet.browser import DatadomeHandler, PerimeterxHandler

__all__ = [
    "__version__",
    "Config",
    "BrowserInitConfig",
    "DatadomeHandler",
    "PerimeterxHandler",
    "SolverClient",
    "CookieResult",
    "PxResult",
    "ParapetError",
    "ConfigError",
    "SetupFailed",
    "RetriesExceeded",
    "SolveFailed",
    "MalformedCookie",
    "BlockedVisitor",
    "SolverError",
]

# Silent by default; callers opt in via logging.getLogger("parapet").setLevel(...)
logging.getLogger("parapet").addHandler(logging.NullHandler())
