from __future__ import annotations

import asyncio

import pytest

from clusterdeck.core.password import PasswordValidator, derive_password_hash

SALT = b"ns-uid-1"


class FakeClock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


class HashSource:
    def __init__(self, password: str) -> None:
        self.stored = derive_password_hash(password, SALT)
        self.fetches = 0
        self.gate: asyncio.Event | None = None

    async def __call__(self) -> bytes:
        self.fetches += 1
        if self.gate is not None:
            await self.gate.wait()
        return self.stored


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


async def test_correct_password_is_accepted(clock):
    source = HashSource("s3cret")
    validator = PasswordValidator(source, SALT, clock=clock)

    assert await validator.valid("s3cret") is True
    assert await validator.valid("wrong") is False


async def test_empty_password_is_rejected_without_fetching(clock):
    source = HashSource("s3cret")
    validator = PasswordValidator(source, SALT, clock=clock)

    assert await validator.valid("") is False
    assert source.fetches == 0


async def test_hash_is_cached_for_ttl(clock):
    source = HashSource("s3cret")
    validator = PasswordValidator(source, SALT, ttl=3.0, clock=clock)

    await validator.valid("s3cret")
    clock.now += 2.9
    await validator.valid("s3cret")
    assert source.fetches == 1

    clock.now += 0.2
    await validator.valid("s3cret")
    assert source.fetches == 2


async def test_rotated_password_applies_after_expiry(clock):
    source = HashSource("old-password")
    validator = PasswordValidator(source, SALT, ttl=3.0, clock=clock)
    assert await validator.valid("old-password") is True

    source.stored = derive_password_hash("new-password", SALT)
    assert await validator.valid("new-password") is False

    clock.now += 3.0
    assert await validator.valid("new-password") is True
    assert await validator.valid("old-password") is False


async def test_concurrent_callers_share_one_refetch(clock):
    source = HashSource("s3cret")
    source.gate = asyncio.Event()
    validator = PasswordValidator(source, SALT, clock=clock)

    checks = [asyncio.create_task(validator.valid("s3cret")) for _ in range(5)]
    await asyncio.sleep(0)
    source.gate.set()

    assert await asyncio.gather(*checks) == [True] * 5
    assert source.fetches == 1


async def test_fetch_failure_propagates_and_is_retried(clock):
    calls = 0

    async def flaky() -> bytes:
        nonlocal calls
        calls += 1
        if calls == 1:
            raise RuntimeError("cluster unreachable")
        return derive_password_hash("s3cret", SALT)

    validator = PasswordValidator(flaky, SALT, clock=clock)
    with pytest.raises(RuntimeError):
        await validator.valid("s3cret")
    assert await validator.valid("s3cret") is True


def test_salt_changes_the_hash():
    assert derive_password_hash("s3cret", b"uid-a") != derive_password_hash("s3cret", b"uid-b")
