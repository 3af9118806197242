"""Typed exceptions for parapet."""


class ParapetError(Exception):
    """Base exception for all parapet errors."""


class ConfigError(ParapetError, ValueError):
    """Configuration value is missing or malformed."""

    def __init__(self, field: str, reason: str):
        self.field = field
        self.reason = reason
        super().__init__(f"Invalid config field {field!r}: {reason}")


class SetupFailed(ParapetError):
    """Browser launch or the initial solve failed before hooks were live."""

    def __init__(self, handler: str, reason: str):
        self.handler = handler
        self.reason = reason
        super().__init__(f"Failed to initialize {handler}: {reason}")


class RetriesExceeded(ParapetError):
    """Blocked request replay kept failing; the session cannot recover."""

    def __init__(self, url: str, failures: int):
        self.url = url
        self.failures = failures
        super().__init__(
            f"Exceeded maximum retries replaying {url} "
            f"({failures} consecutive failures)"
        )


class SolveFailed(ParapetError):
    """A challenge could not be resolved. Flows log this and carry on."""


class MalformedCookie(SolveFailed):
    """Solver returned a cookie string without a ``name=value`` pair."""

    def __init__(self, raw: str):
        self.raw = raw
        super().__init__(f"Solver returned malformed cookie: {raw!r}")


class BlockedVisitor(SolveFailed):
    """DataDome issued a ``t=bv`` verdict, which cannot be solved."""

    def __init__(self, url: str):
        self.url = url
        super().__init__(f"Blocked visitor (t=bv) at {url}")


class SolverError(SolveFailed):
    """Transport or protocol failure talking to the solving service."""

    def __init__(self, endpoint: str, reason: str):
        self.endpoint = endpoint
        self.reason = reason
        super().__init__(f"Solver call {endpoint} failed: {reason}")
