"""Identity provider client used for session refresh.

Only the refresh-token exchange lives here; the authorization-code login
flow belongs to the provider.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Protocol

import httpx

from ..utils.logging_config import StructuredLogger

logger = StructuredLogger(__name__)


class IdentityProviderError(Exception):
    """The provider refused or failed the exchange; the session cannot be renewed."""


class RefreshRejected(IdentityProviderError):
    """Refresh credential invalid, revoked or already used."""


class ProviderUnavailable(IdentityProviderError):
    """Provider unreachable or answered with a server error."""


@dataclass(frozen=True)
class RefreshGrant:
    access_token: str
    refresh_credential: str
    expires_in_seconds: int | None = None


class IdentityProvider(Protocol):
    async def refresh_session(self, refresh_credential: str) -> RefreshGrant: ...


class HttpIdentityProvider:
    """Refresh-token exchange against an OAuth-style user management API."""

    def __init__(
        self,
        base_url: str,
        client_id: str,
        api_key: str | None = None,
        *,
        client: httpx.AsyncClient | None = None,
        timeout: float = 10.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.client_id = client_id
        self.api_key = api_key
        self._client = client
        self._timeout = timeout

    @classmethod
    def from_env(cls, client: httpx.AsyncClient | None = None) -> "HttpIdentityProvider":
        base_url = (os.getenv("TOLLGATE_IDP_BASE_URL") or "").strip()
        client_id = (os.getenv("TOLLGATE_IDP_CLIENT_ID") or "").strip()
        if not base_url or not client_id:
            raise RuntimeError("TOLLGATE_IDP_BASE_URL and TOLLGATE_IDP_CLIENT_ID are required for session refresh")
        return cls(base_url, client_id, os.getenv("TOLLGATE_IDP_API_KEY"), client=client)

    async def _post(self, client: httpx.AsyncClient, body: dict) -> httpx.Response:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return await client.post(
            f"{self.base_url}/user_management/authenticate",
            json=body,
            headers=headers,
            timeout=self._timeout,
        )

    async def refresh_session(self, refresh_credential: str) -> RefreshGrant:
        body = {
            "grant_type": "refresh_token",
            "client_id": self.client_id,
            "refresh_token": refresh_credential,
        }
        if self.api_key:
            body["client_secret"] = self.api_key

        try:
            if self._client is not None:
                response = await self._post(self._client, body)
            else:
                async with httpx.AsyncClient() as client:
                    response = await self._post(client, body)
        except httpx.HTTPError as exc:
            logger.warning("Identity provider unreachable", error=str(exc))
            raise ProviderUnavailable("Identity provider unreachable") from exc

        if response.status_code >= 500:
            raise ProviderUnavailable(f"Identity provider error ({response.status_code})")
        if response.status_code >= 400:
            raise RefreshRejected(f"Refresh rejected ({response.status_code})")

        try:
            data = response.json()
            access_token = data["access_token"]
            new_refresh = data["refresh_token"]
        except (ValueError, KeyError, TypeError) as exc:
            raise ProviderUnavailable("Malformed identity provider response") from exc

        expires_in = data.get("expires_in")
        return RefreshGrant(
            access_token=access_token,
            refresh_credential=new_refresh,
            expires_in_seconds=int(expires_in) if expires_in is not None else None,
        )
