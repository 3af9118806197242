"""Session host: the page/context/browser triple a handler drives.

Owns everything the vendor handlers share:

- prefixed logging that honours ``disable_logging``
- page origin resolution
- cookie replacement (clear by name, then add)
- subscription handles for every listener and route a handler installs
- one-shot cleanup on page close, context close or browser disconnect
"""

import logging
from dataclasses import dataclass
from urllib.parse import urlparse

logger = logging.getLogger("parapet")

_DEFAULT_PORTS = {"http": 80, "https": 443}


@dataclass
class Subscription:
    """An event listener registered through the host."""

    emitter: object
    event: str
    handler: object

    async def detach(self) -> None:
        self.emitter.remove_listener(self.event, self.handler)


@dataclass
class RouteSubscription:
    """A page route registered through the host."""

    page: object
    pattern: object
    handler: object

    async def detach(self) -> None:
        await self.page.unroute(self.pattern, self.handler)


def origin_of(url: str) -> str:
    """``scheme://host[:port]`` for http(s) URLs, ``""`` for opaque ones."""
    try:
        parsed = urlparse(url or "")
        scheme = parsed.scheme.lower()
        host = parsed.hostname
        port = parsed.port
    except ValueError:
        return ""
    if scheme not in _DEFAULT_PORTS or not host:
        return ""
    if ":" in host:
        host = f"[{host}]"
    if port is None or port == _DEFAULT_PORTS[scheme]:
        return f"{scheme}://{host}"
    return f"{scheme}://{host}:{port}"


class SessionHost:
    """Base for the vendor handlers.

    Listeners and routes go through :meth:`subscribe` / :meth:`route`
    so cleanup removes exactly what this host installed and leaves
    other listeners on the page alone.
    """

    def __init__(
        self,
        label: str,
        page,
        browser,
        context,
        disable_logging: bool = False,
    ):
        self.page = page
        self.browser = browser
        self.context = context
        self._label = label
        self._disable_logging = disable_logging
        self._cleanup_executed = False
        self._subscriptions: list[Subscription | RouteSubscription] = []
        self._playwright = None

    @property
    def cleaned_up(self) -> bool:
        return self._cleanup_executed

    def log(self, text: str) -> None:
        if self._disable_logging:
            return
        logger.info("[%s] %s", self._label, text)

    async def resolve_origin(self) -> str:
        """Origin of the page's current URL, or ``""`` before navigation."""
        return origin_of(self.page.url)

    async def replace_cookie(self, name: str, value: str, origin: str) -> None:
        await self.context.clear_cookies(name=name)
        await self.context.add_cookies(
            [{"name": name, "value": value, "url": origin}]
        )

    def subscribe(
        self, emitter, event: str, handler, once: bool = False
    ) -> Subscription:
        if once:
            emitter.once(event, handler)
        else:
            emitter.on(event, handler)
        sub = Subscription(emitter, event, handler)
        self._subscriptions.append(sub)
        return sub

    async def route(self, pattern, handler) -> RouteSubscription:
        await self.page.route(pattern, handler)
        sub = RouteSubscription(self.page, pattern, handler)
        self._subscriptions.append(sub)
        return sub

    async def _detach_all(self) -> None:
        subs, self._subscriptions = self._subscriptions, []
        for sub in reversed(subs):
            try:
                await sub.detach()
            except Exception:
                # Target already closed; nothing left to detach from.
                logger.debug("Detach failed for %r", sub, exc_info=True)

    def register_cleanup(self, *extra_cleanups) -> None:
        """Run cleanup once, on the first close/disconnect event.

        *extra_cleanups* are zero-argument coroutine functions, awaited
        in order before the host's subscriptions are detached.
        """

        async def cleanup(reason: str) -> None:
            if self._cleanup_executed:
                return
            self._cleanup_executed = True

            try:
                self.log(f"Cleaning up [reason: {reason}]...")
                for fn in extra_cleanups:
                    await fn()
            except Exception as e:
                self.log(f"Error during cleanup [reason: {reason}]: {e}")
                raise
            finally:
                await self._detach_all()
                self.log(f"Cleaned up [reason: {reason}]")

        async def on_page_close(*_):
            await cleanup("page close")

        async def on_context_close(*_):
            await cleanup("context close")

        async def on_disconnected(*_):
            await cleanup("browser disconnected")

        self.page.once("close", on_page_close)
        self.context.once("close", on_context_close)
        self.browser.once("disconnected", on_disconnected)

    async def close(self) -> None:
        """Close the browser and stop the driver ``init`` started."""
        try:
            await self.browser.close()
        finally:
            if self._playwright is not None:
                await self._playwright.stop()
                self._playwright = None
