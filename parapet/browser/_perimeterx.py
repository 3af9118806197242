"""PerimeterX handler: init cookie cycle, hold captcha, collector block.

- An init cookie is solved before any hooks go live, then refreshed
  every four minutes once the page has loaded. The latest solve's
  challenge data is kept for the captcha flow.
- A ``captcha.js?...u=`` response means PX served press-and-hold. The
  solver resolves it out of band, the cookie is swapped and the page
  reloads. At most one captcha solve runs at a time; later triggers
  while one is running are dropped.
- PX collector requests are aborted unconditionally.
"""

import asyncio
import logging
import re

from parapet._config import BrowserInitConfig, Config
from parapet._cookies import split_cookie
from parapet._errors import SetupFailed
from parapet._solver import PxResult, SolverClient
from parapet.browser._host import SessionHost, origin_of
from parapet.browser._launch import launch_browser, start_playwright

logger = logging.getLogger("parapet")

INIT_REFRESH_INTERVAL = 4 * 60.0
CAPTCHA_RELOAD_DELAY = 1.0

_COLLECTOR_URL_RE = re.compile(
    r"(?:http|https)://(?=.*px)(?=.*collector).*", re.IGNORECASE
)
_CAPTCHA_URL_RE = re.compile(r"https?.*(captcha\.js).*(u=)", re.IGNORECASE)


def is_collector_url(url: str) -> bool:
    return bool(_COLLECTOR_URL_RE.search(url))


def is_captcha_url(url: str) -> bool:
    return bool(_CAPTCHA_URL_RE.search(url))


class PerimeterxHandler(SessionHost):
    """Installs PerimeterX hooks on one page/context.

    *fallback_origin* scopes cookies while the page is still on
    ``about:blank`` (the init solve runs before the first navigation).
    """

    LABEL = "Parapet PerimeterX Handler"

    def __init__(
        self,
        config: Config,
        context,
        page,
        browser,
        solver: SolverClient,
        fallback_origin: str,
    ):
        super().__init__(
            self.LABEL, page, browser, context, config.disable_logging
        )
        self.config = config
        self.solver = solver
        self.fallback_origin = fallback_origin
        self.px_data: PxResult | None = None
        self._captcha_lock = asyncio.Lock()
        self._refresh_task: asyncio.Task | None = None

    @classmethod
    async def init(
        cls,
        config: Config,
        browser_init: BrowserInitConfig | None = None,
    ):
        """Launch Chrome, install hooks, return ``(page, browser, context, handler)``.

        ``config.website_url`` is required.
        """
        playwright = None
        try:
            fallback_origin = origin_of(config.website_url or "")
            if not fallback_origin:
                raise ValueError(
                    f"website_url must be an http(s) URL, got {config.website_url!r}"
                )

            solver = SolverClient.from_config(config)
            playwright = await start_playwright()
            browser, context, page = await launch_browser(
                playwright, config, browser_init
            )
            handler = cls(
                config, context, page, browser, solver, fallback_origin
            )
            handler._playwright = playwright
            await handler.proxy_traffic()
        except Exception as e:
            if playwright is not None:
                try:
                    await playwright.stop()
                except Exception:
                    logger.debug("Playwright stop failed", exc_info=True)
            raise SetupFailed("PerimeterxHandler", str(e)) from e
        return page, browser, context, handler

    @property
    def refresh_task(self) -> asyncio.Task | None:
        return self._refresh_task

    async def proxy_traffic(self) -> None:
        try:
            self.register_cleanup(self._stop_refresh)

            self.px_data = await self.solve_init()
            self.subscribe(self.page, "load", self._on_first_load, once=True)

            self.subscribe(self.context, "response", self._on_response)
            await self.route(_COLLECTOR_URL_RE, self._on_collector_route)
        except Exception as e:
            self.log(f"Error setting up proxy traffic handlers: {e}")
            raise

    # -- init cookie --------------------------------------------------------

    async def solve_init(self) -> PxResult:
        try:
            self.log("Solving init...")

            result = await self.solver.generate_px_cookies(
                **self.config.solver_params()
            )
            name, value = split_cookie(result.cookie)
            await self.replace_cookie(name, value, await self._cookie_origin())

            self.log("Init solved.")
            return result
        except Exception as e:
            self.log(f"Error solving init: {e}")
            raise

    async def _on_first_load(self, *_) -> None:
        if self.cleaned_up or self._refresh_task is not None:
            return
        self._refresh_task = asyncio.ensure_future(self._refresh_loop())

    async def _refresh_loop(self) -> None:
        while True:
            await asyncio.sleep(INIT_REFRESH_INTERVAL)
            try:
                self.px_data = await self.solve_init()
            except Exception as e:
                self.log(f"Error while generating init cookie: {e}")

    async def _stop_refresh(self) -> None:
        if self._refresh_task is not None:
            self._refresh_task.cancel()
            self._refresh_task = None

    # -- hold captcha -------------------------------------------------------

    async def _on_response(self, response) -> None:
        try:
            if not is_captcha_url(response.url):
                return
            await self.solve_captcha()
        except Exception as e:
            self.log(f"Error while handling captcha blocked route: {e}")

    async def solve_captcha(self) -> PxResult | None:
        """Resolve a hold captcha, then reload.

        Returns None without doing anything when a solve is already
        running. The reload happens whether or not the solve succeeded.
        """
        if self._captcha_lock.locked():
            return None

        async with self._captcha_lock:
            try:
                self.log("Solving captcha...")

                result = await self.solver.generate_hold_captcha(
                    self.px_data.data if self.px_data else None,
                    **self.config.solver_params(),
                )
                self.log("Got captcha response from api!")

                name, value = split_cookie(result.cookie)
                await self.replace_cookie(
                    name, value, await self._cookie_origin()
                )

                self.log("Captcha solved!")
                return result
            except Exception as e:
                self.log(f"Error solving captcha: {e}")
                raise
            finally:
                await asyncio.sleep(CAPTCHA_RELOAD_DELAY)
                await self.page.reload()

    # -- collector ----------------------------------------------------------

    async def _on_collector_route(self, route) -> None:
        try:
            self.log("Blocked collector script.")
            await route.abort()
        except Exception as e:
            self.log(f"Error blocking collector script: {e}")

    async def _cookie_origin(self) -> str:
        return await self.resolve_origin() or self.fallback_origin
