from __future__ import annotations

import base64
import binascii
import json
import time


def _b64decode(segment: str) -> bytes:
    return base64.urlsafe_b64decode(segment + "=" * (-len(segment) % 4))


def decode_payload(token: str) -> dict:
    """Decode the claims segment of a JWT without verifying its signature."""
    parts = token.split(".")
    if len(parts) != 3:
        raise ValueError("Invalid JWT format.")
    try:
        payload = json.loads(_b64decode(parts[1]))
    except (binascii.Error, UnicodeDecodeError, json.JSONDecodeError) as error:
        raise ValueError(f"Invalid JWT payload: {error}") from error
    if not isinstance(payload, dict):
        raise ValueError("Invalid JWT payload; expected a JSON object.")
    return payload


def is_token_valid(token: str, *, leeway: float = 0, now: float | None = None) -> bool:
    try:
        payload = decode_payload(token)
    except ValueError:
        return False

    exp = payload.get("exp")
    if isinstance(exp, bool) or not isinstance(exp, (int, float)):
        return False

    current = time.time() if now is None else now
    return current < exp - leeway
