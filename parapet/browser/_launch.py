"""Browser launch shared by both handlers.

Handlers must run headful on system Chrome (``channel="chrome"``);
headless Chromium is flagged by both vendors.
"""

import logging

from parapet._config import BrowserInitConfig, Config

logger = logging.getLogger("parapet")


async def start_playwright():
    """Start the patchright async driver."""
    try:
        from patchright.async_api import async_playwright
    except ImportError:
        raise ImportError(
            "patchright is required for browser handlers. "
            "Install with: pip install parapet-py"
        ) from None
    return await async_playwright().start()


async def launch_browser(
    playwright,
    config: Config,
    browser_init: BrowserInitConfig | None = None,
    user_agent: str | None = None,
):
    """Launch Chrome through the configured proxy.

    Returns ``(browser, context, page)``.
    """
    browser_init = browser_init or BrowserInitConfig()

    browser = await playwright.chromium.launch(
        proxy=config.proxy_settings(),
        headless=False,
        channel="chrome",
        **browser_init.launch_options(),
    )
    logger.info("Browser launched (proxy=%s)", config.proxy_settings()["server"])

    context_kwargs = browser_init.new_context_options()
    if user_agent:
        context_kwargs["user_agent"] = user_agent
    context = await browser.new_context(**context_kwargs)
    page = await context.new_page()
    return browser, context, page
