from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Mapping, Sequence

import httpx

from auth import jwt
from auth.models import PendingExchange, TokenPair, ensure_replayable
from auth.token_store import CredentialStore

from .constants import DEFAULT_TIMEOUT, LOGGER, REFRESH_ERROR_EXTENSION, UNMIRRORED_HEADERS
from .coordinator import RefreshCoordinator, TokenValidator
from .errors import ConfigurationError, RefreshTokenError

AuthHeaderPolicy = Callable[[TokenPair], Mapping[str, str]]
ShouldRefreshPolicy = Callable[[httpx.Response | None], bool]
# The client handed to a refresh policy is rooted at the request origin, without
# any API base path. Token URLs must be absolute or root-relative.
RefreshPolicy = Callable[[httpx.AsyncClient, TokenPair], Awaitable[TokenPair]]
EventHook = Callable[..., Awaitable[None]]

EVENT_HOOK_NAMES = ("request", "response")


def _origin(url: httpx.URL) -> str:
    return f"{url.scheme}://{url.netloc.decode('ascii')}"


def _timeout_for(request: httpx.Request) -> httpx.Timeout:
    timeout = request.extensions.get("timeout")
    if not timeout:
        return httpx.Timeout(DEFAULT_TIMEOUT)
    return httpx.Timeout(
        DEFAULT_TIMEOUT,
        **{key: timeout[key] for key in ("connect", "read", "write", "pool") if key in timeout},
    )


def _check_event_hooks(
    event_hooks: Mapping[str, Sequence[EventHook]] | None,
) -> dict[str, list[EventHook]]:
    hooks: dict[str, list[EventHook]] = {name: [] for name in EVENT_HOOK_NAMES}
    for name, callbacks in (event_hooks or {}).items():
        if name not in hooks:
            raise ConfigurationError(
                f"Unknown event hook {name!r}; expected one of {', '.join(EVENT_HOOK_NAMES)}."
            )
        for callback in callbacks:
            owner = getattr(callback, "__self__", callback)
            if isinstance(owner, TokenRefreshTransport):
                raise ConfigurationError(
                    "Auxiliary event hooks must not include a TokenRefreshTransport; "
                    "replayed requests would be intercepted again."
                )
            hooks[name].append(callback)
    return hooks


class _BorrowedTransport(httpx.AsyncBaseTransport):
    """Lends a transport to a short-lived client without closing it."""

    def __init__(self, transport: httpx.AsyncBaseTransport) -> None:
        self._transport = transport

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        return await self._transport.handle_async_request(request)

    async def aclose(self) -> None:
        return None


class TokenRefreshTransport(httpx.AsyncBaseTransport):
    """Keeps bearer authentication valid for every request sent through it.

    Outgoing requests wait for any in-flight refresh and then get the current
    auth headers. A response that ``should_refresh`` flags (or a transport
    error, when ``should_refresh(None)`` is true) triggers a single-flight
    refresh through ``on_refresh``, after which the request is replayed once
    through the wrapped transport. The replay never passes through this
    transport again. A failure for credentials that were already replaced
    while the request was in flight is replayed with the current pair and
    does not start another refresh.

    When the refresh itself fails the original response is returned, with the
    refresh error stored in ``response.extensions["token_refresh_error"]``.
    Set ``raise_on_refresh_failure`` to get a ``RefreshTokenError`` instead.

    ``on_refresh`` receives a client whose ``base_url`` is the failing
    request's origin (``https://api.example.com/v2/items`` gives
    ``https://api.example.com``), so a relative token path such as
    ``"oauth/token"`` resolves against the host root.
    """

    def __init__(
        self,
        transport: httpx.AsyncBaseTransport,
        *,
        credentials: CredentialStore,
        auth_header: AuthHeaderPolicy,
        should_refresh: ShouldRefreshPolicy,
        on_refresh: RefreshPolicy,
        is_token_valid: TokenValidator | None = jwt.is_token_valid,
        event_hooks: Mapping[str, Sequence[EventHook]] | None = None,
        raise_on_refresh_failure: bool = False,
        logger: logging.Logger | None = None,
    ) -> None:
        if isinstance(transport, TokenRefreshTransport):
            raise ConfigurationError(
                "TokenRefreshTransport cannot wrap another TokenRefreshTransport; "
                "replayed requests would be intercepted again."
            )
        self._event_hooks = _check_event_hooks(event_hooks)
        self._transport = transport
        self._credentials = credentials
        self._auth_header = auth_header
        self._should_refresh = should_refresh
        self._on_refresh = on_refresh
        self._raise_on_refresh_failure = raise_on_refresh_failure
        self._logger = logger or LOGGER
        self._coordinator = RefreshCoordinator(
            credentials,
            is_token_valid=is_token_valid,
            logger=self._logger,
        )

    @property
    def credentials(self) -> CredentialStore:
        return self._credentials

    @property
    def coordinator(self) -> RefreshCoordinator:
        return self._coordinator

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        await self._coordinator.wait_for_refresh()
        if await ensure_replayable(request):
            self._logger.debug("Buffered request body for %s %s", request.method, request.url)
        sent_auth = self._auth_headers(self._credentials.get())
        request.headers.update(sent_auth)

        try:
            response = await self._transport.handle_async_request(request)
        except httpx.TransportError as error:
            if not self._should_refresh(None):
                raise
            return await self._recover(request, sent_auth, None, error)

        if not self._should_refresh(response):
            # Returns at once unless a refresh started while this request was in flight.
            await self._coordinator.wait_for_refresh()
            return response

        return await self._recover(request, sent_auth, response, None)

    async def aclose(self) -> None:
        await self._transport.aclose()

    def _auth_headers(self, tokens: TokenPair) -> httpx.Headers:
        return httpx.Headers(self._auth_header(tokens))

    async def _recover(
        self,
        request: httpx.Request,
        sent_auth: httpx.Headers,
        response: httpx.Response | None,
        error: httpx.TransportError | None,
    ) -> httpx.Response:
        current = self._credentials.get()
        if not current.has_access_token:
            self._logger.info(
                "Auth failure without an access token; not refreshing (%s %s)",
                request.method,
                request.url,
            )
            return self._original_outcome(response, error)

        exchange = PendingExchange.capture(request, drop_headers=sent_auth)

        if self._auth_headers(current) != sent_auth:
            # Another request already refreshed the credentials this one was sent with.
            if response is not None:
                await response.aclose()
            self._logger.debug(
                "Credentials changed since %s %s was sent", request.method, request.url
            )
            return await self._replay(exchange, current)

        async def run(tokens: TokenPair) -> TokenPair:
            async with self._refresh_client(request, tokens) as client:
                return await self._on_refresh(client, tokens)

        try:
            result = await self._coordinator.refresh(run)
        except RefreshTokenError as refresh_error:
            if self._raise_on_refresh_failure:
                if response is not None:
                    await response.aclose()
                raise
            if response is not None:
                response.extensions[REFRESH_ERROR_EXTENSION] = refresh_error
            return self._original_outcome(response, error)
        except BaseException:
            if response is not None:
                await response.aclose()
            raise

        if response is not None:
            await response.aclose()
        return await self._replay(exchange, result.tokens)

    def _original_outcome(
        self,
        response: httpx.Response | None,
        error: httpx.TransportError | None,
    ) -> httpx.Response:
        if response is not None:
            return response
        assert error is not None
        raise error

    def _refresh_client(self, request: httpx.Request, tokens: TokenPair) -> httpx.AsyncClient:
        auth_keys = {key.lower() for key in self._auth_header(tokens)}
        headers = [
            (key, value)
            for key, value in request.headers.multi_items()
            if key.lower() not in UNMIRRORED_HEADERS and key.lower() not in auth_keys
        ]
        return httpx.AsyncClient(
            base_url=_origin(request.url),
            headers=headers,
            timeout=_timeout_for(request),
            transport=_BorrowedTransport(self._transport),
            event_hooks=self._event_hooks,
        )

    async def _replay(self, exchange: PendingExchange, tokens: TokenPair) -> httpx.Response:
        replay = exchange.build(self._auth_header(tokens))
        self._logger.info("Replaying %s %s with refreshed credentials", replay.method, replay.url)

        for hook in self._event_hooks["request"]:
            await hook(replay)
        response = await self._transport.handle_async_request(replay)
        response.request = replay
        for hook in self._event_hooks["response"]:
            await hook(response)
        return response
