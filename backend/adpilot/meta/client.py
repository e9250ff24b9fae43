"""Rate-limited, paginated, retrying client for the Meta Graph API."""

import asyncio
import json
import logging
import re
from dataclasses import dataclass
from decimal import Decimal
from typing import Awaitable, Callable

import httpx

from adpilot.config import Settings, get_settings
from adpilot.meta.errors import MetaAPIError, TransientError, classify_error
from adpilot.meta.rate_limiter import RateLimiter
from adpilot.meta.transport import GraphTransport, LiveTransport, SandboxTransport

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 3

# Facebook pagination URLs may return a different API version (e.g. v25.0)
# which can cause 403 errors if the app isn't approved for that version.
_VERSION_RE = re.compile(r"graph\.facebook\.com/v[\d.]+/")


@dataclass
class GraphPage:
    items: list[dict]
    next_url: str | None = None


def _form_value(value):
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str)
    if isinstance(value, Decimal):
        return str(value)
    return value


def encode_form(body: dict | None) -> dict:
    """Graph expects nested objects as JSON strings inside form fields."""
    return {k: _form_value(v) for k, v in (body or {}).items() if v is not None}


class GraphClient:
    """Every call goes through ``_request``: budget check, send, classify, retry.

    Only errors whose ``retryable`` flag is set (TRANSIENT, network failures
    and platform throttling) are retried, with ``2 ** attempt`` seconds of
    backoff, for at most ``MAX_ATTEMPTS`` attempts in total.
    """

    def __init__(
        self,
        transport: GraphTransport,
        rate_limiter: RateLimiter | None = None,
        *,
        api_version: str = "v21.0",
        graph_url: str = "https://graph.facebook.com",
        app_id: str = "",
        app_secret: str = "",
        max_attempts: int = MAX_ATTEMPTS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.transport = transport
        self.rate_limiter = rate_limiter
        self.api_version = api_version
        self.base_url = f"{graph_url.rstrip('/')}/{api_version}"
        self.app_id = app_id
        self.app_secret = app_secret
        self.max_attempts = max_attempts
        self._sleep = sleep

    @property
    def supports_refresh(self) -> bool:
        return self.transport.supports_refresh

    def _pin_api_version(self, url: str | None) -> str | None:
        """Rewrite a Facebook pagination URL to use our pinned API version."""
        if not url:
            return None
        return _VERSION_RE.sub(f"graph.facebook.com/{self.api_version}/", url)

    def _url(self, path: str) -> str:
        if path.startswith("http://") or path.startswith("https://"):
            return path
        return f"{self.base_url}/{path.lstrip('/')}"

    # -- Core request loop -------------------------------------------------

    async def _request(
        self,
        method: str,
        path: str,
        token: str | None,
        *,
        principal: str | None = None,
        params: dict | None = None,
        data: dict | None = None,
    ) -> dict:
        url = self._url(path)
        for attempt in range(1, self.max_attempts + 1):
            if principal and self.rate_limiter:
                await self.rate_limiter.check(principal)

            try:
                resp = await self.transport.request(method, url, token=token, params=params, data=data)
            except httpx.TransportError as e:
                error: MetaAPIError = TransientError(f"Network error calling Graph API: {e}")
            else:
                if resp.ok:
                    return resp.payload
                error = classify_error(resp.payload, resp.status_code)

            if not error.retryable or attempt >= self.max_attempts:
                logger.error(
                    "Graph %s %s failed (%s, code=%s, attempt %d/%d): %s",
                    method, path, error.kind.value, error.code, attempt, self.max_attempts, error.message,
                )
                raise error

            delay = 2 ** attempt
            logger.warning(
                "Graph %s %s %s (code=%s), retrying in %ss (attempt %d/%d)",
                method, path, error.kind.value, error.code, delay, attempt, self.max_attempts,
            )
            await self._sleep(delay)

        raise AssertionError("unreachable")

    # -- Reads -------------------------------------------------------------

    async def fetch_page(
        self, path: str, params: dict | None, token: str, principal: str | None = None,
    ) -> GraphPage:
        payload = await self._request("GET", path, token, principal=principal, params=params)
        items = payload.get("data", [])
        next_url = self._pin_api_version((payload.get("paging") or {}).get("next"))
        return GraphPage(items=list(items), next_url=next_url)

    async def fetch_all(
        self, path: str, params: dict | None, token: str, principal: str | None = None,
    ) -> list[dict]:
        """Follow ``paging.next`` until it disappears, accumulating every page."""
        results: list[dict] = []
        url: str | None = path
        while url:
            page = await self.fetch_page(url, params, token, principal)
            results.extend(page.items)
            url = page.next_url
            params = None  # next URL includes params
        return results

    async def fetch_node(
        self, node_id: str, params: dict | None, token: str, principal: str | None = None,
    ) -> dict:
        return await self._request("GET", node_id, token, principal=principal, params=params)

    async def fetch_insights(
        self, object_id: str, params: dict | None, token: str, principal: str | None = None,
    ) -> list[dict]:
        return await self.fetch_all(f"{object_id}/insights", params, token, principal)

    # -- Writes ------------------------------------------------------------

    async def post(
        self, path: str, body: dict | None, token: str, principal: str | None = None,
    ) -> dict:
        return await self._request("POST", path, token, principal=principal, data=encode_form(body))

    async def delete(self, path: str, token: str, principal: str | None = None) -> bool:
        payload = await self._request("DELETE", path, token, principal=principal)
        return payload.get("success") is True

    # -- Tokens ------------------------------------------------------------

    async def exchange_token(self, token: str) -> dict:
        """Exchange a token for a fresh long-lived one (~60 days)."""
        return await self._request(
            "GET",
            "oauth/access_token",
            None,
            params={
                "grant_type": "fb_exchange_token",
                "client_id": self.app_id,
                "client_secret": self.app_secret,
                "fb_exchange_token": token,
            },
        )

    async def aclose(self) -> None:
        await self.transport.aclose()


def build_graph_client(
    redis_client,
    settings: Settings | None = None,
    transport: GraphTransport | None = None,
) -> GraphClient:
    """Wire a client from settings; sandbox mode swaps in the fake transport."""
    settings = settings or get_settings()
    if transport is None:
        transport = SandboxTransport() if settings.meta_sandbox_mode else LiveTransport()
    limiter = None
    if redis_client is not None:
        limiter = RateLimiter(
            redis_client,
            max_calls=settings.meta_rate_limit_max,
            window_seconds=settings.meta_rate_limit_window,
        )
    return GraphClient(
        transport,
        limiter,
        api_version=settings.meta_api_version,
        graph_url=settings.meta_graph_url,
        app_id=settings.meta_app_id,
        app_secret=settings.meta_app_secret,
    )
