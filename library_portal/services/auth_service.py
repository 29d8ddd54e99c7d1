"""Session-based authentication against the hosted auth provider.

Sign-up sends the chosen username as user metadata; a database trigger on the
provider side creates the matching ``profiles`` row, so nothing here writes
profiles directly.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

from library_portal.config import settings

logger = logging.getLogger(__name__)


class AuthError(Exception):
    """Raised when the auth provider rejects credentials or a token."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


@dataclass
class AuthUser:
    id: str
    email: Optional[str] = None
    username: Optional[str] = None

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "AuthUser":
        metadata = data.get("user_metadata") or {}
        return AuthUser(id=data["id"], email=data.get("email"), username=metadata.get("username"))


@dataclass
class Session:
    access_token: str
    refresh_token: Optional[str]
    user: AuthUser


class AuthService:
    """Thin wrapper over the provider's ``/auth/v1`` endpoints."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        base_url = (base_url or settings.supabase_url).rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=f"{base_url}/auth/v1",
            headers={"apikey": api_key if api_key is not None else settings.supabase_anon_key},
            timeout=httpx.Timeout(timeout=settings.backend_timeout, connect=5.0),
            transport=transport,
        )

    async def sign_up(self, email: str, password: str, username: str) -> AuthUser:
        """Register a new account; the profile row is created by the provider."""
        body = await self._post(
            "/signup",
            json={"email": email, "password": password, "data": {"username": username}},
        )
        # Depending on email confirmation settings the user is either top level or nested
        user_data = body.get("user") or body
        logger.info(f"Signed up new account {email}")
        return AuthUser.from_dict(user_data)

    async def sign_in(self, email: str, password: str) -> Session:
        body = await self._post(
            "/token",
            params={"grant_type": "password"},
            json={"email": email, "password": password},
        )
        return Session(
            access_token=body["access_token"],
            refresh_token=body.get("refresh_token"),
            user=AuthUser.from_dict(body["user"]),
        )

    async def sign_out(self, access_token: str) -> None:
        await self._post("/logout", token=access_token)

    async def get_user(self, access_token: str) -> AuthUser:
        """Resolve a bearer token to the user it was issued for."""
        try:
            response = await self._client.get("/user", headers={"Authorization": f"Bearer {access_token}"})
        except httpx.RequestError as exc:
            raise AuthError(f"无法连接到认证服务: {exc}") from exc
        if response.status_code >= 400:
            raise AuthError("登录已失效，请重新登录", status_code=response.status_code)
        return AuthUser.from_dict(response.json())

    async def _post(
        self,
        path: str,
        *,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, str]] = None,
        token: Optional[str] = None,
    ) -> Dict[str, Any]:
        headers = {"Authorization": f"Bearer {token}"} if token else None
        try:
            response = await self._client.post(path, json=json, params=params, headers=headers)
        except httpx.RequestError as exc:
            raise AuthError(f"无法连接到认证服务: {exc}") from exc
        if response.status_code >= 400:
            message = _auth_error_message(response)
            logger.warning(f"Auth provider returned {response.status_code} for {path}: {message}")
            raise AuthError(message, status_code=response.status_code)
        return response.json() if response.content else {}

    async def close(self) -> None:
        await self._client.aclose()


def _auth_error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or f"HTTP {response.status_code}"
    return str(body.get("error_description") or body.get("msg") or body.get("message") or body)
