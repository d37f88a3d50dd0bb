from __future__ import annotations

import asyncio
import sys

import httpx

from auth.jwt import decode_payload, is_token_valid
from auth.models import PendingExchange, TokenPair, ensure_replayable, is_replayable
from auth.oauth2 import (
    TokenResponse,
    bearer_auth_header,
    oauth2_refresh,
    refresh_on_status,
    refresh_token,
)
from auth.token_store import CredentialStore
from relay.constants import APP_VERSION, LOGGER, REFRESH_ERROR_EXTENSION
from relay.coordinator import RefreshCoordinator, RefreshResult
from relay.env import (
    RelaySettings,
    is_truthy,
    load_env,
    load_settings,
    parse_csv_env,
    setup_logging,
    validate_env,
)
from relay.errors import ConfigurationError, RefreshTokenError
from relay.http import TokenRefreshTransport


def build_log_hooks(debug_enabled: bool) -> dict[str, list]:
    async def log_request(request: httpx.Request) -> None:
        if not debug_enabled:
            return
        LOGGER.info("API request %s %s", request.method, request.url)

    async def log_response(response: httpx.Response) -> None:
        if not debug_enabled:
            return
        LOGGER.info(
            "API response %s %s -> %s",
            response.request.method,
            response.request.url,
            response.status_code,
        )
        if response.status_code >= 400:
            body = await response.aread()
            text = body.decode("utf-8", errors="replace")
            if len(text) > 1000:
                text = text[:1000] + "...<truncated>"
            LOGGER.warning("API error body: %s", text)

    return {"request": [log_request], "response": [log_response]}


def create_client(
    settings: RelaySettings | None = None,
    *,
    credentials: CredentialStore | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
    debug_enabled: bool | None = None,
) -> httpx.AsyncClient:
    if settings is None:
        load_env()
        debug_enabled = setup_logging()
        settings = load_settings()
    if debug_enabled is None:
        debug_enabled = False

    if credentials is None:
        credentials = CredentialStore(
            TokenPair(
                access_token=settings.access_token,
                refresh_token=settings.refresh_token,
            )
        )

    log_hooks = build_log_hooks(debug_enabled)
    refresh_transport = TokenRefreshTransport(
        transport or httpx.AsyncHTTPTransport(),
        credentials=credentials,
        auth_header=bearer_auth_header,
        should_refresh=refresh_on_status(*settings.refresh_statuses),
        on_refresh=oauth2_refresh(
            settings.token_url,
            client_id=settings.client_id,
            client_secret=settings.client_secret,
            scope=settings.scope,
        ),
        is_token_valid=is_token_valid if settings.validate_jwt else None,
        # The outer client already logs the final response of a replayed exchange.
        event_hooks={"request": log_hooks["request"]},
        raise_on_refresh_failure=settings.raise_on_refresh_failure,
        logger=LOGGER,
    )
    return httpx.AsyncClient(
        base_url=settings.base_url,
        timeout=settings.timeout,
        transport=refresh_transport,
        event_hooks=log_hooks,
    )


async def fetch(path: str, client: httpx.AsyncClient | None = None) -> httpx.Response:
    http_client = client or create_client()
    try:
        return await http_client.get(path)
    finally:
        if client is None:
            await http_client.aclose()


def main() -> None:
    path = sys.argv[1] if len(sys.argv) > 1 else "/"
    response = asyncio.run(fetch(path))
    print(f"{response.status_code} {response.request.method} {response.request.url}")
    print(response.text)


if __name__ == "__main__":
    main()
