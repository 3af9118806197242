"""Async client for the external challenge-solving service.

The service owns the actual DataDome / PerimeterX solving. parapet only
ships parameters to it and applies what comes back:

- ``generate_user_agent`` -- UA string the browser context should wear
- ``generate_cookie`` -- DataDome captcha/interstitial resolution
- ``generate_tags_cookie`` -- DataDome collector (``/js``) response cookie
- ``generate_px_cookies`` -- PerimeterX init cookie + challenge data
- ``generate_hold_captcha`` -- PerimeterX press-and-hold resolution
- ``check_usage`` -- remaining quota for a site

``parse_challenge_url`` is local: it turns a captcha-delivery URL into
the task payload ``generate_cookie`` expects.
"""

import asyncio
import datetime
import json
import logging
from dataclasses import dataclass, field
from urllib.parse import parse_qsl, urlparse

import rnet
from rnet import Method

from parapet._errors import BlockedVisitor, SolveFailed, SolverError
from parapet._retry import RetryState, is_retryable_status

logger = logging.getLogger("parapet")

DEFAULT_API_HOST = "http://127.0.0.1:8080"

_PATH_USER_AGENT = "/useragent"
_PATH_DD_COOKIE = "/gen"
_PATH_DD_TAGS = "/tags"
_PATH_PX_COOKIES = "/px/gen"
_PATH_PX_HOLD = "/px/holdcaptcha"
_PATH_USAGE = "/usage"


@dataclass
class CookieResult:
    """DataDome solve result. ``message`` holds ``name=value`` on success."""

    error: bool
    message: str | None = None
    cookie: str | None = None

    def unwrap(self) -> str:
        """Return the cookie string or raise SolveFailed."""
        if self.error:
            raise SolveFailed(self.message or self.cookie or "solver reported an error")
        if not self.message:
            raise SolveFailed("solver didn't return any cookie")
        return self.message


@dataclass
class PxResult:
    """PerimeterX solve result.

    ``data`` is opaque challenge context; the hold-captcha call needs the
    most recent one back.
    """

    cookie: str
    data: object = None
    extras: dict = field(default_factory=dict)


def _normalize_host(host: str | None) -> str:
    host = (host or DEFAULT_API_HOST).rstrip("/")
    if "://" not in host:
        host = f"https://{host}"
    return host


class SolverClient:
    """Thin async JSON client over ``rnet.Client``.

    Stateless apart from the connection pool: every method is one POST
    (plus retries on connection errors, 429 and 5xx).
    """

    def __init__(
        self,
        api_key: str,
        api_host: str | None = None,
        timeout: float = 30.0,
        max_retries: int = 2,
        client=None,
    ):
        self._api_key = api_key
        self._host = _normalize_host(api_host)
        self._timeout = timeout
        self._max_retries = max_retries
        if client is None:
            client = rnet.Client(
                timeout=datetime.timedelta(seconds=timeout),
                connect_timeout=datetime.timedelta(seconds=min(timeout, 10.0)),
            )
        self._client = client

    @classmethod
    def from_config(cls, config) -> "SolverClient":
        return cls(
            config.api_key,
            api_host=config.api_host,
            timeout=config.solver_timeout,
            max_retries=config.solver_max_retries,
        )

    @property
    def host(self) -> str:
        return self._host

    async def _post(self, path: str, payload: dict) -> dict:
        """POST ``payload`` and return the decoded JSON object."""
        url = f"{self._host}{path}"
        body = {"auth": self._api_key, **payload}
        state = RetryState(self._max_retries)

        while True:
            try:
                resp = await self._client.request(Method.POST, url, json=body)
            except Exception as e:
                if not state.can_retry:
                    raise SolverError(path, str(e)) from e
                delay = state.use_retry()
                logger.debug(
                    "Solver %s connection error, retry %d/%d in %.1fs: %s",
                    path, state.retries, state.max_retries, delay, e,
                )
                await asyncio.sleep(delay)
                continue

            status = resp.status.as_int()
            if is_retryable_status(status) and state.can_retry:
                delay = state.use_retry()
                logger.debug(
                    "Solver %s HTTP %d, retry %d/%d in %.1fs",
                    path, status, state.retries, state.max_retries, delay,
                )
                await asyncio.sleep(delay)
                continue

            text = await resp.text()
            if status >= 400:
                raise SolverError(path, f"HTTP {status}: {text[:200]}")
            try:
                data = json.loads(text)
            except json.JSONDecodeError as e:
                raise SolverError(path, f"non-JSON response: {e}") from e
            if not isinstance(data, dict):
                raise SolverError(path, "expected a JSON object")
            return data

    async def generate_user_agent(self, region: str, site: str) -> str:
        data = await self._post(
            _PATH_USER_AGENT, {"region": region, "site": site}
        )
        ua = data.get("UserAgent") or data.get("userAgent")
        if not ua:
            raise SolverError(_PATH_USER_AGENT, "no UserAgent in response")
        return ua

    async def generate_cookie(
        self,
        task: dict,
        pd: str,
        *,
        proxy: str,
        proxyregion: str,
        region: str,
        site: str,
    ) -> CookieResult:
        data = await self._post(
            _PATH_DD_COOKIE,
            {
                "data": task,
                "pd": pd,
                "proxy": proxy,
                "proxyregion": proxyregion,
                "region": region,
                "site": site,
            },
        )
        return _cookie_result(data)

    async def generate_tags_cookie(
        self,
        cid: str,
        *,
        proxy: str,
        proxyregion: str,
        region: str,
        site: str,
    ) -> CookieResult:
        data = await self._post(
            _PATH_DD_TAGS,
            {
                "data": {"cid": cid},
                "proxy": proxy,
                "proxyregion": proxyregion,
                "region": region,
                "site": site,
            },
        )
        return _cookie_result(data)

    async def generate_px_cookies(
        self, *, proxy: str, proxyregion: str, region: str, site: str
    ) -> PxResult:
        data = await self._post(
            _PATH_PX_COOKIES,
            {
                "proxy": proxy,
                "proxyregion": proxyregion,
                "region": region,
                "site": site,
            },
        )
        return _px_result(_PATH_PX_COOKIES, data)

    async def generate_hold_captcha(
        self,
        data,
        *,
        proxy: str,
        proxyregion: str,
        region: str,
        site: str,
    ) -> PxResult:
        resp = await self._post(
            _PATH_PX_HOLD,
            {
                "data": data,
                "proxy": proxy,
                "proxyregion": proxyregion,
                "region": region,
                "site": site,
            },
        )
        return _px_result(_PATH_PX_HOLD, resp)

    async def check_usage(self, site: str) -> dict:
        return await self._post(_PATH_USAGE, {"site": site})

    @staticmethod
    def parse_challenge_url(url: str, cookie: str) -> tuple[dict, str]:
        """Turn a captcha-delivery URL into ``(task, pd)``.

        ``pd`` is the product type (``captcha`` or ``interstitial``),
        taken from the URL path. The task is the query string plus the
        current ``datadome`` cookie as ``cid``.
        """
        parsed = urlparse(url)
        params = dict(parse_qsl(parsed.query, keep_blank_values=True))
        if params.get("t") == "bv":
            raise BlockedVisitor(url)
        if not params:
            raise SolveFailed(f"challenge URL has no parameters: {url}")

        path = parsed.path.lower()
        if "/interstitial" in path:
            pd = "interstitial"
        elif "/captcha" in path:
            pd = "captcha"
        else:
            raise SolveFailed(f"unrecognized challenge URL: {url}")

        task = dict(params)
        task["cid"] = cookie
        return task, pd


def _cookie_result(data: dict) -> CookieResult:
    return CookieResult(
        error=bool(data.get("error", False)),
        message=data.get("message"),
        cookie=data.get("cookie"),
    )


def _px_result(path: str, data: dict) -> PxResult:
    if data.get("error"):
        raise SolverError(path, str(data.get("message") or "solver reported an error"))
    cookie = data.get("cookie")
    if not cookie:
        raise SolverError(path, "no cookie in response")
    extras = {
        k: v for k, v in data.items() if k not in ("cookie", "data", "error")
    }
    return PxResult(cookie=cookie, data=data.get("data"), extras=extras)
