"""
Caller-side policy for billing gateway calls
Reads get a timeout plus a few retries with exponential backoff; writes get a
timeout only, because the provider may already have applied the first attempt.
"""
import asyncio
import logging
from typing import Any, Awaitable, Callable

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from membership.errors import ProviderTransientError

logger = logging.getLogger(__name__)


class GatewayCallPolicy:
    def __init__(
        self,
        timeout_seconds: float = 10.0,
        read_attempts: int = 3,
        wait_multiplier: float = 0.5,
        wait_max: float = 4.0,
    ):
        self.timeout_seconds = timeout_seconds
        self.read_attempts = max(1, read_attempts)
        self.wait_multiplier = wait_multiplier
        self.wait_max = wait_max

    @classmethod
    def from_settings(cls, settings) -> "GatewayCallPolicy":
        return cls(
            timeout_seconds=settings.gateway_timeout_seconds,
            read_attempts=settings.read_retry_attempts,
            wait_multiplier=settings.retry_wait_multiplier,
            wait_max=settings.retry_wait_max,
        )

    async def _with_timeout(self, fn: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        try:
            return await asyncio.wait_for(fn(*args, **kwargs), timeout=self.timeout_seconds)
        except asyncio.TimeoutError as e:
            name = getattr(fn, "__name__", repr(fn))
            raise ProviderTransientError(f"{name} timed out after {self.timeout_seconds}s") from e

    async def call_read(self, fn: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        """Idempotent read: retried on transient provider failures only"""
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.read_attempts),
            wait=wait_exponential(multiplier=self.wait_multiplier, max=self.wait_max),
            retry=retry_if_exception_type(ProviderTransientError),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        ):
            with attempt:
                return await self._with_timeout(fn, *args, **kwargs)

    async def call_write(self, fn: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        """Write: single attempt. Callers pass an idempotency key where the provider supports one."""
        return await self._with_timeout(fn, *args, **kwargs)
