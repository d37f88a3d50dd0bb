from __future__ import annotations


class RefreshTokenError(RuntimeError):
    pass


class ConfigurationError(RuntimeError):
    pass
