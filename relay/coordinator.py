from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from auth import jwt
from auth.models import TokenPair
from auth.token_store import CredentialStore

from .constants import LOGGER
from .errors import RefreshTokenError

TokenValidator = Callable[[str], bool]
RefreshRunner = Callable[[TokenPair], Awaitable[TokenPair]]


@dataclass(frozen=True)
class RefreshResult:
    tokens: TokenPair
    refreshed: bool
    owner: bool


def _release(waiter: asyncio.Future) -> None:
    if not waiter.done():
        waiter.set_result(None)


def _consume_result(task: asyncio.Task) -> None:
    # The owner may have been cancelled, leaving nobody to await a failure.
    if not task.cancelled():
        task.exception()


class RefreshCoordinator:
    """Single-flight token refresh on top of a CredentialStore.

    The first caller that flips the store's flag owns the refresh; every other
    caller waits for the flag to drop and then uses whatever tokens are current.
    The refresh runs in its own task so a cancelled caller never aborts it.
    """

    def __init__(
        self,
        credentials: CredentialStore,
        *,
        is_token_valid: TokenValidator | None = jwt.is_token_valid,
        logger: logging.Logger | None = None,
    ) -> None:
        self._credentials = credentials
        self._is_token_valid = is_token_valid
        self._logger = logger or LOGGER
        # Strong references so an orphaned refresh is not garbage collected.
        self._tasks: set[asyncio.Task] = set()

    @property
    def credentials(self) -> CredentialStore:
        return self._credentials

    @property
    def is_refreshing(self) -> bool:
        return self._credentials.is_refreshing()

    async def wait_for_refresh(self) -> None:
        if not self._credentials.is_refreshing():
            return

        loop = asyncio.get_running_loop()
        waiter = loop.create_future()

        def listener(refreshing: bool) -> None:
            if not refreshing:
                loop.call_soon_threadsafe(_release, waiter)

        self._credentials.add_listener(listener)
        try:
            # The flag may have dropped between the first check and subscribing.
            if not self._credentials.is_refreshing():
                return
            self._logger.debug("Waiting for in-flight token refresh")
            await waiter
        finally:
            self._credentials.remove_listener(listener)

    async def refresh(self, run: RefreshRunner) -> RefreshResult:
        if not self._credentials.try_begin_refresh():
            await self.wait_for_refresh()
            return RefreshResult(tokens=self._credentials.get(), refreshed=False, owner=False)

        task = asyncio.ensure_future(self._run_refresh(run))
        task.add_done_callback(_consume_result)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return await asyncio.shield(task)

    async def _run_refresh(self, run: RefreshRunner) -> RefreshResult:
        try:
            current = self._credentials.get()
            if self._token_still_valid(current):
                self._logger.info("Access token still valid; skipping refresh")
                return RefreshResult(tokens=current, refreshed=False, owner=True)

            self._logger.info("Refreshing access token")
            try:
                tokens = await run(current)
            except Exception as error:
                self._logger.warning("Token refresh failed: %s", error)
                raise RefreshTokenError(f"Token refresh failed: {error}") from error

            if not isinstance(tokens, TokenPair):
                self._logger.warning(
                    "Token refresh returned %s instead of TokenPair", type(tokens).__name__
                )
                raise RefreshTokenError(
                    f"Refresh policy returned {type(tokens).__name__}, expected TokenPair."
                )

            self._credentials.set(tokens)
            self._logger.info("Access token refreshed")
            return RefreshResult(tokens=tokens, refreshed=True, owner=True)
        finally:
            # Tokens are stored before this point so released waiters read the new pair.
            self._credentials.set_refreshing(False)

    def _token_still_valid(self, tokens: TokenPair) -> bool:
        if self._is_token_valid is None or not tokens.access_token:
            return False
        try:
            return bool(self._is_token_valid(tokens.access_token))
        except Exception:
            self._logger.exception("Token validator failed; refreshing anyway")
            return False
