"""DataDome handler: collector cookie substitution and block recovery.

Two independent hooks share one page/context:

1. **Collector cookie** -- the DataDome tags script POSTs its payload
   (marked ``ddk``) to ``/js``. The POST is replayed from inside the
   page so it keeps the browser's network identity, the solver mints a
   replacement ``datadome`` value, and the intercepted request is
   fulfilled with that value grafted onto the server-issued cookie
   attributes.
2. **Block recovery** -- a 403 JSON response pointing at
   ``captcha-delivery`` is remembered. When the captcha/interstitial
   navigation follows, it is answered with a holding page while the
   solver resolves the challenge, then the blocked request is replayed
   in the page and the page reloads.
"""

import asyncio
import json
import logging
import re
from dataclasses import dataclass

from parapet._config import BrowserInitConfig, Config
from parapet._cookies import (
    DATADOME_COOKIE_NAME,
    compose_cookie,
    find_cookie,
    split_cookie,
)
from parapet._errors import RetriesExceeded, SetupFailed, SolveFailed
from parapet._solver import SolverClient
from parapet.browser._host import SessionHost, origin_of
from parapet.browser._launch import launch_browser, start_playwright

logger = logging.getLogger("parapet")

MAX_REPLAY_FAILURES = 5

_TAGS_ROUTE = "**/js"
_TAGS_MARKER = "ddk"
_BLOCK_MARKER = "captcha-delivery"
_CAPTCHA_URL_RE = re.compile(r"geo\.captcha-delivery\.com/(interstitial|captcha)")

# Headers that no longer describe the re-serialized body.
_DROP_FULFILL_HEADERS = ("content-encoding", "content-length")

# Replays the collector POST with the page's own fetch(). Playwright
# calls bare arrow-function strings with ``arg``.
_TAGS_REPLAY_JS = """async ({ url, options }) => {
    try {
        const response = await fetch(url, {
            method: options.method,
            headers: options.headers,
            body: options.body,
        });
        const body = await response.json();
        return {
            success: true,
            status: response.status,
            headers: Object.fromEntries(response.headers.entries()),
            body: body,
        };
    } catch (e) {
        return { success: false };
    }
}"""

_BLOCKED_REPLAY_JS = """async ({ method, headers, postData, url }) => {
    try {
        const res = await fetch(url, {
            method: method,
            body: postData,
            headers: headers,
        });
        return res.status;
    } catch (e) {
        return 0;
    }
}"""


@dataclass
class PendingRequest:
    """Snapshot of a request DataDome answered with a captcha 403."""

    method: str
    headers: dict
    body: str | None
    url: str

    @classmethod
    def from_request(cls, request) -> "PendingRequest":
        return cls(
            method=request.method,
            headers=dict(request.headers),
            body=request.post_data,
            url=request.url,
        )


class DatadomeHandler(SessionHost):
    """Installs DataDome hooks on one page/context.

    Use :meth:`init` to launch a browser with the hooks in place, or
    construct directly around an existing triple and call
    :meth:`proxy_traffic`.
    """

    LABEL = "Parapet DataDome Handler"

    def __init__(
        self,
        config: Config,
        context,
        page,
        browser,
        solver: SolverClient,
    ):
        super().__init__(
            self.LABEL, page, browser, context, config.disable_logging
        )
        self.config = config
        self.solver = solver
        # Last captured block wins.
        self.blocked_request: PendingRequest | None = None
        self.replay_failures = 0
        self._tags_processing = False
        self._tags_lock = asyncio.Lock()
        self._block_lock = asyncio.Lock()
        self._holding_html: str | None = None

    @classmethod
    async def init(
        cls,
        config: Config,
        browser_init: BrowserInitConfig | None = None,
    ):
        """Launch Chrome, install hooks, return ``(page, browser, context, handler)``."""
        playwright = None
        try:
            solver = SolverClient.from_config(config)
            user_agent = await solver.generate_user_agent(
                config.region, config.site
            )
            playwright = await start_playwright()
            browser, context, page = await launch_browser(
                playwright, config, browser_init, user_agent=user_agent
            )
            handler = cls(config, context, page, browser, solver)
            handler._playwright = playwright
            await handler.proxy_traffic()
        except Exception as e:
            if playwright is not None:
                try:
                    await playwright.stop()
                except Exception:
                    logger.debug("Playwright stop failed", exc_info=True)
            raise SetupFailed("DatadomeHandler", str(e)) from e
        return page, browser, context, handler

    @property
    def tags_processing(self) -> bool:
        return self._tags_processing

    async def proxy_traffic(self) -> None:
        await self.route(_TAGS_ROUTE, self._on_tags_route)
        await self.route(_CAPTCHA_URL_RE, self._on_captcha_route)
        self.subscribe(self.context, "response", self._on_response)
        self.register_cleanup()

    # -- collector cookie ---------------------------------------------------

    async def _on_tags_route(self, route) -> None:
        # Set once continue_/abort/fulfill has been attempted; a route
        # can only be resolved once.
        resolved = False
        try:
            request = route.request
            post_data = request.post_data

            async with self._tags_lock:
                if (
                    self._tags_processing
                    or not post_data
                    or request.method != "POST"
                    or _TAGS_MARKER not in post_data
                ):
                    resolved = True
                    await route.continue_()
                    return
                self._tags_processing = True

            try:
                fulfill = await self._solve_tags_cookie(request)
                resolved = True
                if fulfill is None:
                    self.log("Tags replay failed in page, aborting request.")
                    await route.abort()
                else:
                    await route.fulfill(**fulfill)
            finally:
                self._tags_processing = False
        except Exception as e:
            if resolved:
                self.log(f"Error resolving tags route: {e}")
                return
            self.log(f"Error replacing tags cookie, passing through: {e}")
            try:
                await route.continue_()
            except Exception as exc:
                self.log(f"Error passing tags route through: {exc}")

    async def _solve_tags_cookie(self, request) -> dict | None:
        """Replay the collector POST and build the ``route.fulfill`` kwargs.

        Returns None when the in-page replay failed.
        """
        replay = await self.page.evaluate(
            _TAGS_REPLAY_JS,
            {
                "url": request.url,
                "options": {
                    "method": request.method,
                    "headers": request.headers,
                    "body": request.post_data,
                },
            },
        )
        if not replay or not replay.get("success"):
            return None

        captured = (replay.get("body") or {}).get("cookie")
        if not isinstance(captured, str):
            raise SolveFailed("collector response carried no cookie")

        cid = await self._datadome_cookie_value() or "null"
        result = await self.solver.generate_tags_cookie(
            cid, **self.config.solver_params()
        )
        body_cookie = compose_cookie(result.unwrap(), captured)

        self.log("Solved tags payload.")

        status = replay["status"]
        headers = {
            k: v
            for k, v in (replay.get("headers") or {}).items()
            if k.lower() not in _DROP_FULFILL_HEADERS
        }
        return {
            "status": status,
            "headers": headers,
            "body": json.dumps(
                {"status": status, "cookie": body_cookie},
                separators=(",", ":"),
            ),
        }

    # -- block recovery -----------------------------------------------------

    async def _on_response(self, response) -> None:
        if response.status != 403:
            return
        try:
            body = await response.json()
        except Exception:
            logger.debug("403 without JSON body at %s", response.url)
            return
        if _BLOCK_MARKER not in json.dumps(body):
            return

        self.blocked_request = PendingRequest.from_request(response.request)
        self.log(
            f"Captured blocked request "
            f"{self.blocked_request.method} {self.blocked_request.url}"
        )

    async def _on_captcha_route(self, route) -> None:
        if self._block_lock.locked():
            self.log("Block recovery already running, serving holding page.")
            await self._serve_holding_page(route)
            return

        async with self._block_lock:
            block_task = asyncio.ensure_future(
                self.handle_block(route.request.url)
            )
            try:
                await self._serve_holding_page(route)
            finally:
                await block_task

            pending = self.blocked_request
            if pending is not None:
                status = await self._replay_blocked(pending)
                try:
                    self._record_replay(status, pending.url)
                finally:
                    if self.blocked_request is pending:
                        self.blocked_request = None

            await self.page.reload()

    async def _serve_holding_page(self, route) -> None:
        await route.fulfill(
            status=200,
            content_type="text/html",
            body=self._holding_page(),
        )

    async def handle_block(self, url: str) -> bool:
        """Resolve a captcha/interstitial and install the new cookie.

        Failures are logged and reported as ``False``; the page keeps
        its stale cookie.
        """
        try:
            self.log("Got blocked, solving datadome...")

            cookie = await self._datadome_cookie_value()
            if cookie is None:
                raise SolveFailed("couldn't find initial datadome cookie")

            task, pd = self.solver.parse_challenge_url(url, cookie)
            result = await self.solver.generate_cookie(
                task, pd, **self.config.solver_params()
            )
            name, value = split_cookie(result.unwrap())

            await self.replace_cookie(name, value, await self._cookie_origin())
            self.log("Solved datadome block.")
            return True
        except Exception as e:
            self.log(f"Error while handling block: {e}")
            return False

    async def _replay_blocked(self, pending: PendingRequest) -> int | None:
        try:
            return await self.page.evaluate(
                _BLOCKED_REPLAY_JS,
                {
                    "method": pending.method,
                    "headers": pending.headers,
                    "postData": pending.body,
                    "url": pending.url,
                },
            )
        except Exception as e:
            self.log(f"Error replaying blocked request: {e}")
            return None

    def _record_replay(self, status: int | None, url: str) -> None:
        if status is not None and 200 <= status < 300:
            self.replay_failures = 0
            self.log(f"Blocked request replayed (HTTP {status}).")
            return

        self.replay_failures += 1
        self.log(
            f"Blocked request replay failed (HTTP {status}), "
            f"{self.replay_failures}/{MAX_REPLAY_FAILURES}"
        )
        if self.replay_failures >= MAX_REPLAY_FAILURES:
            raise RetriesExceeded(url, self.replay_failures)

    # -- helpers ------------------------------------------------------------

    async def _datadome_cookie_value(self) -> str | None:
        cookie = find_cookie(await self.context.cookies(), DATADOME_COOKIE_NAME)
        return cookie["value"] if cookie else None

    async def _cookie_origin(self) -> str:
        origin = await self.resolve_origin()
        if origin:
            return origin
        for candidate in (
            self.blocked_request.url if self.blocked_request else None,
            self.config.website_url,
        ):
            origin = origin_of(candidate or "")
            if origin:
                return origin
        raise SolveFailed("no origin available to scope the cookie")

    def _holding_page(self) -> str:
        if self._holding_html is None:
            self._holding_html = self.config.load_holding_page()
        return self._holding_html
