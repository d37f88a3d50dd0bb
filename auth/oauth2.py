from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass

import httpx

from .models import TokenPair

DEFAULT_REFRESH_STATUSES = (401, 403)


@dataclass
class TokenResponse:
    access_token: str
    refresh_token: str | None
    expires_in: int | None
    scope: str

    def to_token_pair(self, fallback_refresh_token: str | None = None) -> TokenPair:
        return TokenPair(
            access_token=self.access_token,
            refresh_token=self.refresh_token or fallback_refresh_token,
        )

    @classmethod
    def from_payload(cls, payload: dict) -> "TokenResponse":
        if not isinstance(payload, dict):
            raise RuntimeError("Token response must be a JSON object.")

        access_token = payload.get("access_token")
        refresh_token = payload.get("refresh_token")
        expires_in = payload.get("expires_in")
        scope = payload.get("scope", "")

        if not isinstance(access_token, str) or not access_token:
            raise RuntimeError("Token response missing access_token.")
        if refresh_token is not None and (not isinstance(refresh_token, str) or not refresh_token):
            raise RuntimeError("Token response refresh_token must be a non-empty string.")
        if expires_in is not None and (isinstance(expires_in, bool) or not isinstance(expires_in, int)):
            raise RuntimeError("Token response expires_in must be an integer.")
        if not isinstance(scope, str):
            raise RuntimeError("Token response scope must be a string.")

        return cls(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=expires_in,
            scope=scope,
        )


def bearer_auth_header(tokens: TokenPair) -> dict[str, str]:
    if not tokens.access_token:
        return {}
    return {"Authorization": f"Bearer {tokens.access_token}"}


def refresh_on_status(*statuses: int) -> Callable[[httpx.Response | None], bool]:
    """Build a predicate that requests a refresh for the given status codes."""
    trigger = frozenset(statuses or DEFAULT_REFRESH_STATUSES)

    def should_refresh(response: httpx.Response | None) -> bool:
        if response is None:
            return False
        return response.status_code in trigger

    return should_refresh


async def _token_request(
    token_url: str,
    payload: dict[str, str],
    *,
    client: httpx.AsyncClient | None = None,
) -> TokenResponse:
    own_client = client is None
    http_client = client or httpx.AsyncClient()

    try:
        response = await http_client.post(token_url, data=payload)
        response.raise_for_status()
    except httpx.HTTPStatusError as error:
        detail = error.response.text
        raise RuntimeError(
            f"Token request failed with status {error.response.status_code}: {detail}"
        ) from error
    finally:
        if own_client:
            await http_client.aclose()

    try:
        body = response.json()
    except ValueError as error:
        raise RuntimeError(f"Token response is not valid JSON: {error}") from error
    return TokenResponse.from_payload(body)


async def refresh_token(
    token_url: str,
    refresh_token: str,
    *,
    client_id: str | None = None,
    client_secret: str | None = None,
    scope: str | None = None,
    client: httpx.AsyncClient | None = None,
) -> TokenResponse:
    payload = {
        "grant_type": "refresh_token",
        "refresh_token": refresh_token,
    }
    if client_id:
        payload["client_id"] = client_id
    if client_secret:
        payload["client_secret"] = client_secret
    if scope:
        payload["scope"] = scope
    return await _token_request(token_url, payload, client=client)


def oauth2_refresh(
    token_url: str,
    *,
    client_id: str | None = None,
    client_secret: str | None = None,
    scope: str | None = None,
) -> Callable[[httpx.AsyncClient, TokenPair], Awaitable[TokenPair]]:
    """Build a refresh policy that runs the OAuth2 ``refresh_token`` grant.

    The server may omit ``refresh_token`` in its answer; the current one is
    kept in that case.
    """

    async def on_refresh(client: httpx.AsyncClient, tokens: TokenPair) -> TokenPair:
        if not tokens.refresh_token:
            raise RuntimeError("No refresh token available; re-authentication required.")
        refreshed = await refresh_token(
            token_url,
            tokens.refresh_token,
            client_id=client_id,
            client_secret=client_secret,
            scope=scope,
            client=client,
        )
        return refreshed.to_token_pair(tokens.refresh_token)

    return on_refresh
