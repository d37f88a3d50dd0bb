import asyncio

import pytest

from auth.models import TokenPair
from auth.token_store import CredentialStore
from relay.coordinator import RefreshCoordinator
from relay.errors import RefreshTokenError
from tests.token_helpers import make_expiring_jwt


class Runner:
    def __init__(self, result=None, *, error=None, gate=None) -> None:
        self.result = TokenPair("new", "r2") if result is None else result
        self.error = error
        self.gate = gate
        self.calls: list[TokenPair] = []

    async def __call__(self, tokens: TokenPair):
        self.calls.append(tokens)
        await asyncio.sleep(0)
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return self.result


@pytest.mark.asyncio
async def test_wait_for_refresh_returns_when_idle(credentials) -> None:
    coordinator = RefreshCoordinator(credentials)

    await asyncio.wait_for(coordinator.wait_for_refresh(), timeout=1)


@pytest.mark.asyncio
async def test_refresh_updates_tokens_and_clears_flag(credentials) -> None:
    coordinator = RefreshCoordinator(credentials)
    runner = Runner()

    result = await coordinator.refresh(runner)

    assert runner.calls == [TokenPair("expired", "r1")]
    assert result.owner is True
    assert result.refreshed is True
    assert result.tokens == TokenPair("new", "r2")
    assert credentials.get() == TokenPair("new", "r2")
    assert coordinator.is_refreshing is False


@pytest.mark.asyncio
async def test_concurrent_refreshes_run_once(credentials) -> None:
    coordinator = RefreshCoordinator(credentials)
    runner = Runner()

    results = await asyncio.gather(*(coordinator.refresh(runner) for _ in range(5)))

    assert len(runner.calls) == 1
    assert [result.owner for result in results].count(True) == 1
    assert {result.tokens for result in results} == {TokenPair("new", "r2")}
    assert credentials.is_refreshing() is False


@pytest.mark.asyncio
async def test_refresh_failure_clears_flag_and_keeps_tokens(credentials) -> None:
    coordinator = RefreshCoordinator(credentials)
    cause = RuntimeError("invalid_grant")
    runner = Runner(error=cause)

    with pytest.raises(RefreshTokenError) as excinfo:
        await coordinator.refresh(runner)

    assert excinfo.value.__cause__ is cause
    assert credentials.is_refreshing() is False
    assert credentials.get() == TokenPair("expired", "r1")


@pytest.mark.asyncio
async def test_waiters_released_with_stale_tokens_after_failure(credentials) -> None:
    coordinator = RefreshCoordinator(credentials)
    runner = Runner(error=RuntimeError("invalid_grant"))

    owner, waiter = await asyncio.gather(
        coordinator.refresh(runner),
        coordinator.refresh(runner),
        return_exceptions=True,
    )

    assert isinstance(owner, RefreshTokenError)
    assert waiter.owner is False
    assert waiter.tokens == TokenPair("expired", "r1")
    assert len(runner.calls) == 1


@pytest.mark.asyncio
async def test_refresh_rejects_non_token_pair_result(credentials) -> None:
    coordinator = RefreshCoordinator(credentials)

    with pytest.raises(RefreshTokenError, match="expected TokenPair"):
        await coordinator.refresh(Runner(result={"access_token": "new"}))

    assert credentials.is_refreshing() is False


@pytest.mark.asyncio
async def test_owner_skips_refresh_when_token_still_valid() -> None:
    token = make_expiring_jwt(3600)
    credentials = CredentialStore(TokenPair(token, "r1"))
    coordinator = RefreshCoordinator(credentials)
    runner = Runner()

    result = await coordinator.refresh(runner)

    assert runner.calls == []
    assert result.owner is True
    assert result.refreshed is False
    assert result.tokens == TokenPair(token, "r1")
    assert credentials.is_refreshing() is False


@pytest.mark.asyncio
async def test_validation_can_be_disabled() -> None:
    credentials = CredentialStore(TokenPair(make_expiring_jwt(3600), "r1"))
    coordinator = RefreshCoordinator(credentials, is_token_valid=None)
    runner = Runner()

    result = await coordinator.refresh(runner)

    assert len(runner.calls) == 1
    assert result.refreshed is True


@pytest.mark.asyncio
async def test_failing_validator_falls_back_to_refresh(credentials) -> None:
    def broken(token: str) -> bool:
        raise ValueError("bad token")

    coordinator = RefreshCoordinator(credentials, is_token_valid=broken)
    runner = Runner()

    result = await coordinator.refresh(runner)

    assert result.refreshed is True


@pytest.mark.asyncio
async def test_cancelled_waiter_does_not_abort_refresh(credentials) -> None:
    coordinator = RefreshCoordinator(credentials)
    gate = asyncio.Event()
    runner = Runner(gate=gate)

    owner = asyncio.create_task(coordinator.refresh(runner))
    await asyncio.sleep(0)
    waiter = asyncio.create_task(coordinator.wait_for_refresh())
    await asyncio.sleep(0)

    waiter.cancel()
    with pytest.raises(asyncio.CancelledError):
        await waiter

    assert credentials.is_refreshing() is True
    gate.set()
    result = await owner

    assert result.refreshed is True
    assert credentials.get() == TokenPair("new", "r2")


@pytest.mark.asyncio
async def test_cancelled_owner_does_not_abort_refresh(credentials) -> None:
    coordinator = RefreshCoordinator(credentials)
    gate = asyncio.Event()
    runner = Runner(gate=gate)

    owner = asyncio.create_task(coordinator.refresh(runner))
    await asyncio.sleep(0)
    waiter = asyncio.create_task(coordinator.refresh(runner))
    await asyncio.sleep(0)

    owner.cancel()
    with pytest.raises(asyncio.CancelledError):
        await owner

    gate.set()
    result = await asyncio.wait_for(waiter, timeout=1)

    assert result.owner is False
    assert result.tokens == TokenPair("new", "r2")
    assert len(runner.calls) == 1
    assert credentials.is_refreshing() is False


@pytest.mark.asyncio
async def test_orphaned_refresh_is_kept_alive_until_done(credentials) -> None:
    coordinator = RefreshCoordinator(credentials)
    gate = asyncio.Event()
    runner = Runner(gate=gate)

    owner = asyncio.create_task(coordinator.refresh(runner))
    await asyncio.sleep(0)
    owner.cancel()
    with pytest.raises(asyncio.CancelledError):
        await owner

    assert len(coordinator._tasks) == 1
    assert credentials.is_refreshing() is True

    gate.set()
    await asyncio.wait_for(coordinator.wait_for_refresh(), timeout=1)
    await asyncio.sleep(0)

    assert coordinator._tasks == set()
    assert credentials.get() == TokenPair("new", "r2")


def test_refresh_error_carries_only_its_message() -> None:
    error = RefreshTokenError("Token refresh failed: invalid_grant")

    assert str(error) == "Token refresh failed: invalid_grant"
    assert not hasattr(error, "status_code")


@pytest.mark.asyncio
async def test_waiter_released_by_flag_change_from_another_thread(credentials) -> None:
    coordinator = RefreshCoordinator(credentials)
    assert credentials.try_begin_refresh() is True

    waiter = asyncio.create_task(coordinator.wait_for_refresh())
    await asyncio.sleep(0)
    assert waiter.done() is False

    credentials.set(TokenPair("external", "r9"))
    await asyncio.to_thread(credentials.set_refreshing, False)
    await asyncio.wait_for(waiter, timeout=1)

    assert credentials.get() == TokenPair("external", "r9")
