from __future__ import annotations

import logging

LOGGER = logging.getLogger("relay.auth")
APP_VERSION = "0.1.0"

DEFAULT_TIMEOUT = 30.0

# Extension key carrying the refresh failure on a delivered original response.
REFRESH_ERROR_EXTENSION = "token_refresh_error"

# Not mirrored from a failing request onto the client handed to the refresh policy.
UNMIRRORED_HEADERS = frozenset(
    {"content-length", "content-type", "transfer-encoding", "host"}
)
