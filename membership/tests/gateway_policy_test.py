"""
Unit tests for gateway call timeouts and read retries
"""
import asyncio

import pytest

from membership.errors import ProviderError, ProviderTransientError
from membership.gateway_policy import GatewayCallPolicy


def make_policy(**overrides):
    options = dict(timeout_seconds=1.0, read_attempts=3, wait_multiplier=0.0, wait_max=0.0)
    options.update(overrides)
    return GatewayCallPolicy(**options)


class Flaky:
    """Fails with the queued exceptions, then returns "ok" """

    def __init__(self, *failures):
        self.failures = list(failures)
        self.calls = 0

    async def __call__(self, *args, **kwargs):
        self.calls += 1
        if self.failures:
            raise self.failures.pop(0)
        return "ok"


@pytest.mark.asyncio
async def test_read_retries_transient_failures():
    fn = Flaky(ProviderTransientError("503"), ProviderTransientError("timeout"))
    assert await make_policy().call_read(fn, "sub_1") == "ok"
    assert fn.calls == 3


@pytest.mark.asyncio
async def test_read_gives_up_after_attempts():
    fn = Flaky(*[ProviderTransientError("down")] * 5)
    with pytest.raises(ProviderTransientError):
        await make_policy(read_attempts=2).call_read(fn)
    assert fn.calls == 2


@pytest.mark.asyncio
async def test_read_does_not_retry_permanent_errors():
    fn = Flaky(ProviderError("card declined"))
    with pytest.raises(ProviderError):
        await make_policy().call_read(fn)
    assert fn.calls == 1


@pytest.mark.asyncio
async def test_write_is_attempted_once():
    fn = Flaky(ProviderTransientError("connection reset"))
    with pytest.raises(ProviderTransientError):
        await make_policy().call_write(fn, "sub_1", idempotency_key="k")
    assert fn.calls == 1


@pytest.mark.asyncio
async def test_timeout_becomes_transient_error():
    async def hang():
        await asyncio.sleep(5)

    with pytest.raises(ProviderTransientError, match="timed out"):
        await make_policy(timeout_seconds=0.01).call_write(hang)


def test_from_settings(settings):
    policy = GatewayCallPolicy.from_settings(settings)
    assert policy.timeout_seconds == 2.0
    assert policy.read_attempts == 3
