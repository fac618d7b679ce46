"""Retry, timeout and polling helpers for provider calls.

Every provider call goes through `call_with_retries`: a per-call timeout
distinct from the run deadline, bounded exponential backoff with jitter on
transient errors, and "already exists" normalised to success.

A timed-out call is still running on the provider side, so at most one
attempt per call is in flight: a retry is only launched after the previous
attempt has settled, and an attempt that never settles is reported instead
of relaunched.
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, TypeVar

from core.config import AppSettings
from core.domain.errors import AlreadyExistsError, ProvisioningError, TransientProviderError

logger = logging.getLogger(__name__)

T = TypeVar("T")

Sleeper = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 3
    base_delay: float = 1.25
    jitter: float = 0.35
    call_timeout: float = 300.0
    settle_timeout: float = 300.0

    @classmethod
    def from_settings(cls, settings: AppSettings) -> "RetryPolicy":
        return cls(
            max_retries=settings.max_retries,
            base_delay=settings.retry_base_delay_seconds,
            jitter=0.35 if settings.retry_base_delay_seconds > 0 else 0.0,
            call_timeout=settings.call_timeout_seconds,
            settle_timeout=settings.call_settle_seconds,
        )

    def delay(self, attempt: int) -> float:
        base = self.base_delay * (2**attempt)
        return base + (random.uniform(0.0, self.jitter) if self.jitter else 0.0)


async def _await_attempt(task: "asyncio.Future[T]", policy: RetryPolicy, step: str) -> T:
    """Wait for one attempt; past the call timeout, give it `settle_timeout` to finish.

    Raises `asyncio.TimeoutError` only while the attempt is still running.
    """

    try:
        return await asyncio.wait_for(asyncio.shield(task), timeout=policy.call_timeout)
    except asyncio.TimeoutError:
        if policy.settle_timeout <= 0:
            raise
        logger.warning(
            "%s: no answer after %gs, waiting up to %gs for the call to settle",
            step,
            policy.call_timeout,
            policy.settle_timeout,
        )
        return await asyncio.wait_for(asyncio.shield(task), timeout=policy.settle_timeout)


async def call_with_retries(
    operation: Callable[[], Awaitable[T]],
    *,
    policy: RetryPolicy,
    step: str,
    environment: str | None = None,
    account_id: str | None = None,
    sleep: Sleeper = asyncio.sleep,
    existing_ok: bool = True,
    in_flight: set[asyncio.Future[Any]] | None = None,
) -> T | None:
    """Run `operation` with timeout + retries.

    Returns None when the provider reports the resource already exists,
    unless `existing_ok` is False: then the conflict means the resource is not
    resolvable yet, and it is retried like a transient error.

    In-flight calls are shielded: a timeout or an outer cancellation stops
    waiting, but never aborts a resource creation mid-call. Attempts still
    running are added to `in_flight` so the caller can wait for them.
    """

    attempt = 0
    while True:
        task = asyncio.ensure_future(operation())
        if in_flight is not None:
            in_flight.add(task)
            task.add_done_callback(in_flight.discard)
        try:
            return await _await_attempt(task, policy, step)
        except asyncio.TimeoutError as exc:
            waited = policy.call_timeout + policy.settle_timeout
            stuck = TransientProviderError(f"{step} still running after {waited:g}s; not retried while in flight")
            raise stuck.with_context(environment=environment, account_id=account_id, step=step) from exc
        except AlreadyExistsError as exc:
            if existing_ok:
                logger.info("%s: already exists, treating as success (%s)", step, exc.message)
                return None
            error: ProvisioningError = TransientProviderError(f"{exc.message} (not resolvable yet)")
            error.__cause__ = exc
        except TransientProviderError as exc:
            error = exc
        except ProvisioningError as exc:
            raise exc.with_context(environment=environment, account_id=account_id, step=step)

        error.with_context(environment=environment, account_id=account_id, step=step)
        if attempt >= policy.max_retries:
            logger.warning("%s: giving up after %d attempt(s): %s", step, attempt + 1, error)
            raise error
        delay = policy.delay(attempt)
        logger.warning("%s: transient failure (%s), retrying in %.2fs", step, error.message, delay)
        await sleep(delay)
        attempt += 1


async def poll_until(
    check: Callable[[], Awaitable[bool]],
    *,
    timeout: float,
    interval: float,
    max_interval: float = 60.0,
    description: str = "condition",
    sleep: Sleeper = asyncio.sleep,
) -> None:
    """Poll `check` with exponential backoff until it returns True or `timeout` passes."""

    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    wait = interval
    attempts = 0
    while True:
        attempts += 1
        if await check():
            return
        remaining = deadline - loop.time()
        if remaining <= 0:
            raise TransientProviderError(f"{description} not reached after {attempts} poll(s)")
        await sleep(min(wait, remaining))
        wait = min(max(wait * 2, 0.1), max_interval) if wait else 0.0
