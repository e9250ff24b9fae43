"""Transports behind the Graph client.

``LiveTransport`` talks to graph.facebook.com over httpx. ``SandboxTransport``
answers every call locally with deterministic ids so the whole pipeline can be
exercised without a Meta app (``META_SANDBOX_MODE=true``) and in tests.
"""

import itertools
import json
import logging
import re
from dataclasses import dataclass, field
from urllib.parse import parse_qs, urlparse

import httpx

logger = logging.getLogger(__name__)


@dataclass
class GraphResponse:
    status_code: int
    payload: dict

    @property
    def ok(self) -> bool:
        return self.status_code < 400 and "error" not in self.payload


class GraphTransport:
    """Interface: send one request and return the decoded JSON envelope."""

    supports_refresh = True

    async def request(
        self,
        method: str,
        url: str,
        *,
        token: str | None = None,
        params: dict | None = None,
        data: dict | None = None,
    ) -> GraphResponse:
        raise NotImplementedError

    async def aclose(self) -> None:
        return None


class LiveTransport(GraphTransport):
    def __init__(self, client: httpx.AsyncClient | None = None, timeout: float = 30.0):
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def request(self, method, url, *, token=None, params=None, data=None) -> GraphResponse:
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        # httpx.TransportError propagates; the client decides whether to retry
        resp = await self._client.request(method, url, params=params, data=data, headers=headers)
        try:
            payload = resp.json()
        except (json.JSONDecodeError, ValueError):
            payload = {}
        if not isinstance(payload, dict):
            payload = {"data": payload}
        return GraphResponse(status_code=resp.status_code, payload=payload)

    async def aclose(self) -> None:
        await self._client.aclose()


_VERSION_SEGMENT_RE = re.compile(r"^/v[\d.]+")


@dataclass
class SandboxCall:
    method: str
    path: str
    params: dict = field(default_factory=dict)
    data: dict = field(default_factory=dict)


class SandboxTransport(GraphTransport):
    """In-process stand-in for the Graph API.

    Edge reads return whatever was seeded with :meth:`seed` or created
    through the API (paged by ``page_size``). Creates return ``sandbox_<n>``
    ids and are remembered as nodes, so a later read sees them; updates merge
    into the stored node. Every call is recorded in ``calls``.
    """

    supports_refresh = False

    def __init__(self, page_size: int = 25, currency: str = "USD", currency_offset: int = 100):
        self.page_size = page_size
        self.currency = currency
        self.currency_offset = currency_offset
        self.calls: list[SandboxCall] = []
        self._edges: dict[str, list[dict]] = {}
        self._nodes: dict[str, dict] = {}
        self._ids = itertools.count(1)

    def seed(self, path: str, items: list[dict]) -> None:
        self._edges[path.strip("/")] = list(items)

    def seed_node(self, node_id: str, payload: dict) -> None:
        self._nodes[node_id] = dict(payload)

    def calls_to(self, method: str, path_suffix: str = "") -> list[SandboxCall]:
        return [
            c for c in self.calls
            if c.method == method and c.path.endswith(path_suffix.strip("/"))
        ]

    @staticmethod
    def _path(url: str) -> str:
        path = urlparse(url).path
        return _VERSION_SEGMENT_RE.sub("", path).strip("/")

    async def request(self, method, url, *, token=None, params=None, data=None) -> GraphResponse:
        path = self._path(url)
        query = {k: v[-1] for k, v in parse_qs(urlparse(url).query).items()}
        merged = {**query, **(params or {})}
        self.calls.append(SandboxCall(method=method, path=path, params=merged, data=dict(data or {})))
        logger.debug("[sandbox] %s /%s", method, path)

        if method == "GET":
            return self._get(path, merged)
        if method == "DELETE":
            return GraphResponse(200, {"success": True})
        return self._post(path, data or {})

    def _get(self, path: str, params: dict) -> GraphResponse:
        if path == "oauth/access_token":
            return GraphResponse(200, {"access_token": "sandbox_token", "expires_in": 5184000})
        if path in self._edges or "/" in path:
            items = self._edges.get(path, [])
            offset = int(params.get("offset", 0))
            page = items[offset:offset + self.page_size]
            envelope = {"data": page, "paging": {}}
            if offset + self.page_size < len(items):
                envelope["paging"]["next"] = (
                    f"https://graph.facebook.com/v0.0/{path}?offset={offset + self.page_size}"
                )
            return GraphResponse(200, envelope)
        if path in self._nodes:
            return GraphResponse(200, {"id": path, **self._nodes[path]})
        node = {"id": path}
        if path.startswith("act_"):
            node.update({"currency": self.currency, "currency_offset": self.currency_offset})
        return GraphResponse(200, node)

    def _post(self, path: str, data: dict) -> GraphResponse:
        fields = {k: _decode_form_value(v) for k, v in data.items()}
        if "/" not in path:
            self._nodes.setdefault(path, {}).update(fields)
            return GraphResponse(200, {"success": True})
        edge = path.rsplit("/", 1)[-1]
        n = next(self._ids)
        if edge == "adimages":
            return GraphResponse(200, {"images": {"sandbox": {"hash": f"sandbox_hash_{n}"}}})
        node_id = f"sandbox_{n}"
        node = {"id": node_id, **fields}
        self._nodes[node_id] = node
        self._edges.setdefault(path, []).append(node)
        return GraphResponse(200, {"id": node_id})


def _decode_form_value(value):
    if isinstance(value, str) and value[:1] in ("{", "["):
        try:
            return json.loads(value)
        except ValueError:
            return value
    return value
