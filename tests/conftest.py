import pytest

from auth.models import TokenPair
from auth.token_store import CredentialStore


@pytest.fixture
def credentials() -> CredentialStore:
    return CredentialStore(TokenPair(access_token="expired", refresh_token="r1"))


@pytest.fixture(autouse=True)
def clean_relay_env(monkeypatch) -> None:
    for key in (
        "RELAY_BASE_URL",
        "RELAY_TOKEN_URL",
        "RELAY_CLIENT_ID",
        "RELAY_CLIENT_SECRET",
        "RELAY_ACCESS_TOKEN",
        "RELAY_REFRESH_TOKEN",
        "RELAY_REFRESH_STATUSES",
        "RELAY_TIMEOUT",
        "RELAY_VALIDATE_JWT",
        "RELAY_RAISE_ON_REFRESH_FAILURE",
        "RELAY_SCOPE",
        "RELAY_DEBUG",
    ):
        monkeypatch.delenv(key, raising=False)
