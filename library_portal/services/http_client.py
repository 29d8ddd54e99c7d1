"""Async client for the hosted backend's REST interface.

Rows live in a PostgREST-style service under ``{SUPABASE_URL}/rest/v1``.
Queries are composed with :class:`TableQuery` and sent through one shared
``httpx.AsyncClient`` held by :class:`BackendClient`::

    result = await client.table("books").select("id, title").in_("id", [1, 2]).execute()
    rows = result.data
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Tuple

import httpx

from library_portal.config import settings

logger = logging.getLogger(__name__)


class BackendError(Exception):
    """Raised when the backend rejects a query or cannot be reached."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


@dataclass
class QueryResult:
    data: List[Dict[str, Any]]
    count: Optional[int] = None


def _format_value(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _quote_list_item(value: Any) -> str:
    # Strings are always quoted so that padded ids survive the round trip
    if isinstance(value, str):
        escaped = value.replace("\\", "\\\\").replace('"', '\\"')
        return f'"{escaped}"'
    return _format_value(value)


def parse_content_range(header: Optional[str]) -> Optional[int]:
    """Return the total from a ``Content-Range: 0-9/25`` header."""
    if not header or "/" not in header:
        return None
    total = header.rsplit("/", 1)[1]
    return int(total) if total.isdigit() else None


class TableQuery:
    """One request against a single table.

    Filters map onto PostgREST operators (``eq``, ``in``, ``ilike``, ``is``,
    ``lt``, ``gte``, ``lte``, ``or``). Nothing is sent until :meth:`execute`.
    """

    def __init__(self, client: "BackendClient", table: str) -> None:
        self._client = client
        self._table = table
        self._method = "GET"
        self._params: List[Tuple[str, str]] = []
        self._headers: Dict[str, str] = {}
        self._payload: Any = None

    # ------------------------- Verbs ------------------------- #
    def select(self, columns: str = "*", *, count: bool = False, head: bool = False) -> "TableQuery":
        self._method = "HEAD" if head else "GET"
        self._params.append(("select", columns.replace(" ", "")))
        if count:
            self._prefer("count=exact")
        return self

    def insert(self, row: Dict[str, Any]) -> "TableQuery":
        self._method = "POST"
        self._payload = row
        self._prefer("return=representation")
        return self

    def update(self, values: Dict[str, Any]) -> "TableQuery":
        self._method = "PATCH"
        self._payload = values
        self._prefer("return=representation")
        return self

    def delete(self) -> "TableQuery":
        self._method = "DELETE"
        self._prefer("return=representation")
        return self

    # ------------------------- Filters ------------------------- #
    def eq(self, column: str, value: Any) -> "TableQuery":
        self._params.append((column, f"eq.{_format_value(value)}"))
        return self

    def in_(self, column: str, values: Iterable[Any]) -> "TableQuery":
        items = ",".join(_quote_list_item(v) for v in values)
        self._params.append((column, f"in.({items})"))
        return self

    def ilike(self, column: str, pattern: str) -> "TableQuery":
        self._params.append((column, f"ilike.{pattern}"))
        return self

    def or_(self, expression: str) -> "TableQuery":
        self._params.append(("or", f"({expression})"))
        return self

    def is_null(self, column: str) -> "TableQuery":
        self._params.append((column, "is.null"))
        return self

    def not_null(self, column: str) -> "TableQuery":
        self._params.append((column, "not.is.null"))
        return self

    def lt(self, column: str, value: Any) -> "TableQuery":
        self._params.append((column, f"lt.{_format_value(value)}"))
        return self

    def gte(self, column: str, value: Any) -> "TableQuery":
        self._params.append((column, f"gte.{_format_value(value)}"))
        return self

    def lte(self, column: str, value: Any) -> "TableQuery":
        self._params.append((column, f"lte.{_format_value(value)}"))
        return self

    # ------------------------- Shaping ------------------------- #
    def order(self, column: str, *, desc: bool = False) -> "TableQuery":
        self._params.append(("order", f"{column}.{'desc' if desc else 'asc'}"))
        return self

    def range(self, start: int, end: int) -> "TableQuery":
        """Limit the result to rows ``start..end`` (inclusive, zero based)."""
        self._headers["Range-Unit"] = "items"
        self._headers["Range"] = f"{start}-{end}"
        return self

    def _prefer(self, value: str) -> None:
        existing = self._headers.get("Prefer")
        self._headers["Prefer"] = f"{existing},{value}" if existing else value

    async def execute(self) -> QueryResult:
        response = await self._client.request(
            self._method,
            self._table,
            params=self._params,
            headers=self._headers,
            json=self._payload,
        )
        count = parse_content_range(response.headers.get("Content-Range"))
        if self._method == "HEAD" or not response.content:
            return QueryResult(data=[], count=count)
        body = response.json()
        if isinstance(body, dict):
            return QueryResult(data=[body], count=count)
        return QueryResult(data=body, count=count)


class BackendClient:
    """Connection-pooled client for the backend's REST tables."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        base_url = (base_url or settings.supabase_url).rstrip("/")
        api_key = api_key if api_key is not None else settings.api_key
        limits = httpx.Limits(
            max_keepalive_connections=20,
            max_connections=100,
            keepalive_expiry=30.0,
        )
        timeout_value = timeout if timeout is not None else settings.backend_timeout
        self._client = httpx.AsyncClient(
            base_url=f"{base_url}/rest/v1",
            headers={
                "apikey": api_key,
                "Authorization": f"Bearer {api_key}",
            },
            limits=limits,
            timeout=httpx.Timeout(timeout=timeout_value, connect=5.0),
            transport=transport,
        )

    def table(self, name: str) -> TableQuery:
        return TableQuery(self, name)

    async def request(
        self,
        method: str,
        table: str,
        *,
        params: Optional[List[Tuple[str, str]]] = None,
        headers: Optional[Dict[str, str]] = None,
        json: Any = None,
    ) -> httpx.Response:
        try:
            response = await self._client.request(
                method,
                f"/{table}",
                params=params,
                headers=headers,
                json=json,
            )
        except httpx.RequestError as exc:
            logger.warning(f"Backend request failed: {method} {table}: {exc}")
            raise BackendError(f"无法连接到数据服务: {exc}") from exc

        if response.status_code >= 400:
            message = _error_message(response)
            logger.warning(f"Backend returned {response.status_code} for {method} {table}: {message}")
            raise BackendError(message, status_code=response.status_code)
        return response

    async def close(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "BackendClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or f"HTTP {response.status_code}"
    if isinstance(body, dict):
        return str(body.get("message") or body.get("msg") or body.get("error_description") or body)
    return str(body)


# Process-wide client, created on application start
_global_client: Optional[BackendClient] = None


async def get_backend_client() -> BackendClient:
    """Return the shared backend client, creating it on first use."""
    global _global_client
    if _global_client is None:
        _global_client = BackendClient()
    return _global_client


async def cleanup_backend_client() -> None:
    global _global_client
    if _global_client:
        await _global_client.close()
        _global_client = None
