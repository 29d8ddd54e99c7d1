import asyncio
import copy
import json
import re
from typing import Any, Dict, List, Optional, Tuple

import httpx
import pytest
from fastapi.testclient import TestClient

from library_portal.config import settings
from library_portal.services.auth_service import AuthService
from library_portal.services.http_client import BackendClient

TABLES = ("authors", "categories", "books", "profiles", "borrow_records", "system_logs")


def _text(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _parse_list(body: str) -> List[str]:
    """Split the inside of ``in.(...)``; quoted items may hold commas and spaces."""
    items, current, quoted, i = [], "", False, 0
    while i < len(body):
        ch = body[i]
        if quoted:
            if ch == "\\" and i + 1 < len(body):
                current += body[i + 1]
                i += 1
            elif ch == '"':
                quoted = False
            else:
                current += ch
        elif ch == '"':
            quoted = True
        elif ch == ",":
            items.append(current)
            current = ""
        else:
            current += ch
        i += 1
    items.append(current)
    return items


def _compare_key(value: Any) -> Tuple[int, Any]:
    try:
        return (0, float(value))
    except (TypeError, ValueError):
        return (1, str(value))


def _matches(row: Dict[str, Any], column: str, expr: str) -> bool:
    if expr.startswith("not."):
        return not _matches(row, column, expr[4:])
    op, _, arg = expr.partition(".")
    value = row.get(column)
    if op == "eq":
        return _text(value) == arg
    if op == "in":
        return _text(value) in _parse_list(arg[1:-1])
    if op == "ilike":
        if value is None:
            return False
        pattern = "".join(".*" if ch in "*%" else re.escape(ch) for ch in arg)
        return re.fullmatch(pattern, str(value), re.IGNORECASE | re.DOTALL) is not None
    if op == "is":
        return value is None if arg == "null" else _text(value) == arg
    if op in ("lt", "lte", "gt", "gte"):
        if value is None:
            return False
        left, right = _compare_key(value), _compare_key(arg)
        if left[0] != right[0]:
            left, right = (1, str(value)), (1, arg)
        return {"lt": left < right, "lte": left <= right, "gt": left > right, "gte": left >= right}[op]
    raise ValueError(f"unsupported operator {op}")


class FakeBackend:
    """In-memory stand-in for the hosted REST and auth endpoints."""

    def __init__(self) -> None:
        self.tables: Dict[str, List[Dict[str, Any]]] = {name: [] for name in TABLES}
        self.requests: List[httpx.Request] = []
        self.failures: Dict[Tuple[str, str], int] = {}
        self.auth_users: Dict[str, Dict[str, Any]] = {}
        self._next_id: Dict[str, int] = {name: 1 for name in TABLES}

    # ------------------------- Setup helpers ------------------------- #
    def seed(self, table: str, *rows: Dict[str, Any]) -> None:
        for row in rows:
            row = dict(row)
            if "id" not in row:
                row["id"] = self._next_id[table]
            if isinstance(row["id"], int):
                self._next_id[table] = max(self._next_id[table], row["id"] + 1)
            self.tables[table].append(row)

    def fail(self, method: str, table: str, status: int = 500) -> None:
        self.failures[(method, table)] = status

    def register(self, user_id: str, email: str, password: str = "secret123", username: Optional[str] = None) -> str:
        """Create an auth account for ``user_id`` and return its access token."""
        self.auth_users[email] = {
            "id": user_id,
            "email": email,
            "password": password,
            "user_metadata": {"username": username},
        }
        return f"token-{user_id}"

    def row(self, table: str, row_id: Any) -> Optional[Dict[str, Any]]:
        return next((r for r in self.tables[table] if _text(r["id"]) == _text(row_id)), None)

    def requests_to(self, table: str, method: Optional[str] = None) -> List[httpx.Request]:
        return [
            r for r in self.requests
            if r.url.path == f"/rest/v1/{table}" and (method is None or r.method == method)
        ]

    # ------------------------- Transport ------------------------- #
    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path.startswith("/auth/v1/"):
            return self._auth(request, path[len("/auth/v1/"):])
        table = path[len("/rest/v1/"):]
        if table not in self.tables:
            return httpx.Response(404, json={"message": f"relation \"{table}\" does not exist"})
        status = self.failures.get((request.method, table))
        if status:
            return httpx.Response(status, json={"message": f"{request.method} {table} failed"})
        return self._rest(request, table)

    def _filtered(self, request: httpx.Request, table: str) -> List[Dict[str, Any]]:
        rows = self.tables[table]
        for key, value in request.url.params.multi_items():
            if key in ("select", "order"):
                continue
            if key == "or":
                terms = [t.split(".", 1) for t in value[1:-1].split(",")]
                rows = [r for r in rows if any(_matches(r, col, expr) for col, expr in terms)]
            else:
                rows = [r for r in rows if _matches(r, key, value)]
        return rows

    def _rest(self, request: httpx.Request, table: str) -> httpx.Response:
        params = request.url.params
        if request.method == "POST":
            row = json.loads(request.content)
            self.seed(table, row)
            created = self.tables[table][-1]
            return httpx.Response(201, json=[copy.deepcopy(created)])

        rows = self._filtered(request, table)
        if request.method == "PATCH":
            values = json.loads(request.content)
            for row in rows:
                row.update(values)
            return httpx.Response(200, json=copy.deepcopy(rows))
        if request.method == "DELETE":
            self.tables[table] = [r for r in self.tables[table] if r not in rows]
            return httpx.Response(200, json=copy.deepcopy(rows))

        if "order" in params:
            column, _, direction = params["order"].partition(".")
            rows = sorted(rows, key=lambda r: (r.get(column) is None, _compare_key(r.get(column))))
            if direction == "desc":
                rows.reverse()
        total = len(rows)
        start, end = 0, total - 1
        if "Range" in request.headers:
            start, end = (int(part) for part in request.headers["Range"].split("-"))
            if start >= total and start > 0:
                return httpx.Response(416, json={"message": "Requested range not satisfiable"})
            rows = rows[start:end + 1]
        headers = {}
        if "count=exact" in request.headers.get("Prefer", ""):
            headers["Content-Range"] = f"{start}-{start + len(rows) - 1}/{total}" if rows else f"*/{total}"
        if request.method == "HEAD":
            return httpx.Response(200, headers=headers)

        columns = params.get("select", "*")
        if columns != "*":
            names = columns.split(",")
            rows = [{name: r.get(name) for name in names} for r in rows]
        return httpx.Response(200, json=copy.deepcopy(rows), headers=headers)

    def _auth(self, request: httpx.Request, endpoint: str) -> httpx.Response:
        body = json.loads(request.content) if request.content else {}
        if endpoint == "signup":
            if body["email"] in self.auth_users:
                return httpx.Response(422, json={"msg": "User already registered"})
            user_id = f"user-{len(self.auth_users) + 1}"
            username = (body.get("data") or {}).get("username")
            self.register(user_id, body["email"], body["password"], username)
            # Mirrors the provider-side trigger that creates the profile
            self.seed("profiles", {"id": user_id, "username": username, "role": "user", "email": body["email"]})
            return httpx.Response(200, json=self._public(self.auth_users[body["email"]]))
        if endpoint == "token":
            user = self.auth_users.get(body.get("email"))
            if not user or user["password"] != body.get("password"):
                return httpx.Response(400, json={"error_description": "Invalid login credentials"})
            return httpx.Response(
                200,
                json={"access_token": f"token-{user['id']}", "refresh_token": "refresh", "user": self._public(user)},
            )
        token = request.headers.get("Authorization", "").removeprefix("Bearer ")
        user = next((u for u in self.auth_users.values() if f"token-{u['id']}" == token), None)
        if endpoint == "logout":
            return httpx.Response(204)
        if endpoint == "user":
            if user is None:
                return httpx.Response(401, json={"msg": "invalid JWT"})
            return httpx.Response(200, json=self._public(user))
        return httpx.Response(404, json={"msg": "not found"})

    @staticmethod
    def _public(user: Dict[str, Any]) -> Dict[str, Any]:
        return {"id": user["id"], "email": user["email"], "user_metadata": user["user_metadata"]}


def seed_library(backend: FakeBackend) -> None:
    """A small library with one padded user id, one orphaned user id and dangling joins."""
    backend.seed("authors", {"id": 1, "name": "鲁迅", "biography": None}, {"id": 2, "name": "George Orwell", "biography": None})
    backend.seed("categories", {"id": 1, "name": "小说", "description": None}, {"id": 2, "name": "科幻", "description": None})
    backend.seed(
        "books",
        {"id": 1, "title": "呐喊", "author_id": 1, "category_id": 1, "status": "borrowed", "isbn": None},
        {"id": 2, "title": "1984", "author_id": 2, "category_id": 2, "status": "borrowed", "isbn": None},
        {"id": 3, "title": "Animal Farm", "author_id": 2, "category_id": 1, "status": "available", "isbn": None},
        {"id": 4, "title": "Orphan Book", "author_id": 99, "category_id": None, "status": "borrowed", "isbn": None},
    )
    backend.seed(
        "profiles",
        {"id": "abc123", "username": "alice", "role": "user", "email": "alice@example.com", "created_at": "2024-01-01T00:00:00"},
        {"id": "admin1", "username": "root", "role": "admin", "email": "root@example.com", "created_at": "2024-01-02T00:00:00"},
    )
    backend.seed(
        "borrow_records",
        {"id": 1, "book_id": 1, "user_id": " abc123", "borrow_date": "2024-01-01", "due_date": "2024-01-31", "return_date": None},
        {"id": 2, "book_id": 2, "user_id": "zzz999", "borrow_date": "2024-02-01", "due_date": "2024-03-15", "return_date": None},
        {"id": 3, "book_id": 3, "user_id": "abc123", "borrow_date": "2024-01-10", "due_date": "2024-02-10", "return_date": "2024-01-10"},
        {"id": 4, "book_id": 4, "user_id": "admin1", "borrow_date": "2024-02-20", "due_date": "2024-03-20", "return_date": None},
        {"id": 5, "book_id": 42, "user_id": "abc123", "borrow_date": "2024-02-25", "due_date": "2024-03-25", "return_date": None},
    )


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def seeded(backend):
    seed_library(backend)
    return backend


@pytest.fixture
def client(backend):
    backend_client = BackendClient(
        base_url="http://backend.test", api_key="test-key", transport=httpx.MockTransport(backend.handler)
    )
    yield backend_client
    asyncio.run(backend_client.close())


@pytest.fixture
def auth(backend):
    service = AuthService(base_url="http://backend.test", api_key="test-key", transport=httpx.MockTransport(backend.handler))
    yield service
    asyncio.run(service.close())


@pytest.fixture
def permissions_file(tmp_path, monkeypatch):
    path = tmp_path / "permissions.json"
    monkeypatch.setattr(settings, "permissions_file", str(path))
    return path


@pytest.fixture
def api_client(client, auth, permissions_file):
    from library_portal.api import app, get_auth, get_client

    app.dependency_overrides[get_client] = lambda: client
    app.dependency_overrides[get_auth] = lambda: auth
    try:
        with TestClient(app) as test_client:
            yield test_client
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def admin_headers(seeded):
    return {"Authorization": f"Bearer {seeded.register('admin1', 'root@example.com')}"}


@pytest.fixture
def user_headers(seeded):
    return {"Authorization": f"Bearer {seeded.register('abc123', 'alice@example.com')}"}
