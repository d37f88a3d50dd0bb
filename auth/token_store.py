from __future__ import annotations

import logging
import threading
from collections.abc import Callable

from .models import TokenPair

LOGGER = logging.getLogger("relay.auth")

RefreshListener = Callable[[bool], None]


class CredentialStore:
    """Current token pair plus the "refresh in progress" flag for one session.

    Only the refresh coordinator flips the flag. Everything else reads it or
    subscribes to its transitions.
    """

    def __init__(self, tokens: TokenPair | None = None) -> None:
        self._lock = threading.Lock()
        self._tokens = tokens or TokenPair()
        self._refreshing = False
        self._listeners: list[RefreshListener] = []

    def get(self) -> TokenPair:
        return self._tokens

    def set(self, tokens: TokenPair) -> None:
        if not isinstance(tokens, TokenPair):
            raise TypeError(f"Expected TokenPair, got {type(tokens).__name__}.")
        with self._lock:
            self._tokens = tokens

    def is_refreshing(self) -> bool:
        return self._refreshing

    def try_begin_refresh(self) -> bool:
        with self._lock:
            if self._refreshing:
                return False
            self._refreshing = True
            listeners = list(self._listeners)
        self._notify(listeners, True)
        return True

    def set_refreshing(self, refreshing: bool) -> None:
        with self._lock:
            if self._refreshing == refreshing:
                return
            self._refreshing = refreshing
            listeners = list(self._listeners)
        self._notify(listeners, refreshing)

    def add_listener(self, listener: RefreshListener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def remove_listener(self, listener: RefreshListener) -> None:
        with self._lock:
            try:
                self._listeners.remove(listener)
            except ValueError:
                pass

    def _notify(self, listeners: list[RefreshListener], refreshing: bool) -> None:
        for listener in listeners:
            try:
                listener(refreshing)
            except Exception:
                LOGGER.exception("Refresh listener failed (refreshing=%s)", refreshing)
