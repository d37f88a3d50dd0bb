from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field

import httpx

# Recomputed by httpx when a captured request is rebuilt.
FRAMING_HEADERS = frozenset({"content-length", "transfer-encoding"})


@dataclass(frozen=True)
class TokenPair:
    access_token: str | None = None
    refresh_token: str | None = None

    @property
    def has_access_token(self) -> bool:
        return bool(self.access_token)


def is_replayable(request: httpx.Request) -> bool:
    return isinstance(request.stream, httpx.ByteStream)


async def ensure_replayable(request: httpx.Request) -> bool:
    """Buffer a streaming body in memory so the request can be sent twice.

    Returns True when the body had to be buffered.
    """
    if is_replayable(request):
        return False
    await request.aread()
    return True


@dataclass(frozen=True)
class PendingExchange:
    method: str
    url: httpx.URL
    headers: list[tuple[str, str]]
    content: bytes = b""
    extensions: dict = field(default_factory=dict)

    @classmethod
    def capture(
        cls, request: httpx.Request, drop_headers: Iterable[str] = ()
    ) -> "PendingExchange":
        """Snapshot a request for replay, leaving out framing and ``drop_headers``."""
        if not is_replayable(request):
            raise RuntimeError(
                f"Request body for {request.method} {request.url} was not buffered "
                "and cannot be replayed."
            )
        dropped = FRAMING_HEADERS | {key.lower() for key in drop_headers}
        headers = [
            (key, value)
            for key, value in request.headers.multi_items()
            if key.lower() not in dropped
        ]
        return cls(
            method=request.method,
            url=request.url,
            headers=headers,
            content=request.read(),
            extensions=dict(request.extensions),
        )

    def build(self, extra_headers: Mapping[str, str] | None = None) -> httpx.Request:
        headers = httpx.Headers(self.headers)
        if extra_headers:
            headers.update(extra_headers)
        return httpx.Request(
            method=self.method,
            url=self.url,
            headers=headers,
            content=self.content,
            extensions=dict(self.extensions),
        )
