"""Bounded retry with exponential backoff and account failover."""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import AsyncIterator, Awaitable, Callable, TypeVar

from .accounts import AccountProvider, Credentials
from .config import RetryConfig
from .errors import ErrorKind, RateLimitedError, RequestCancelled, classify_error, is_retryable
from .events import StatusNotice

LOG = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    initial_delay_ms: int = 1000
    max_delay_ms: int = 30000
    backoff_multiplier: float = 2.0
    jitter_enabled: bool = True
    retry_server_errors: bool = False

    @classmethod
    def from_config(cls, cfg: RetryConfig) -> "RetryPolicy":
        return cls(
            max_attempts=cfg.max_attempts,
            initial_delay_ms=cfg.initial_delay_ms,
            max_delay_ms=cfg.max_delay_ms,
            backoff_multiplier=cfg.backoff_multiplier,
            jitter_enabled=cfg.jitter_enabled,
            retry_server_errors=cfg.retry_server_errors,
        )

    def delay_ms(self, attempt: int, rand: Callable[[], float] = random.random) -> float:
        """Delay after failed attempt `attempt` (1-based), with up to 10% jitter."""
        base = self.initial_delay_ms * self.backoff_multiplier ** (attempt - 1)
        jitter = rand() * 0.1 if self.jitter_enabled else 0.0
        return min(base * (1 + jitter), float(self.max_delay_ms))

    def is_retryable(self, exc: BaseException) -> bool:
        return is_retryable(classify_error(exc), retry_server_errors=self.retry_server_errors)


@dataclass(frozen=True)
class _Step:
    notice: StatusNotice
    delay_seconds: float


class RetryController:
    """Runs one request attempt after another until success or a final failure.

    Transient failures are retried after a backoff delay. A rate/usage limit
    first asks the account provider for other credentials and retries right
    away; without an alternate account, or without an account provider, the
    limit is raised immediately with a reset estimate.
    """

    def __init__(
        self,
        policy: RetryPolicy,
        *,
        accounts: AccountProvider | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rand: Callable[[], float] = random.random,
    ) -> None:
        self.policy = policy
        self.accounts = accounts
        self._sleep = sleep
        self._rand = rand

    def _credentials(self) -> Credentials | None:
        return self.accounts.current() if self.accounts is not None else None

    def _plan(self, exc: Exception, attempt: int, label: str) -> _Step:
        """Decide how to continue after a failed attempt; raises when done."""
        kind = classify_error(exc)
        if kind is ErrorKind.RATE_LIMITED:
            return self._rotate(exc, attempt, label)
        if attempt >= self.policy.max_attempts:
            LOG.error("%s failed, attempts exhausted attempt=%s kind=%s error=%s", label, attempt, kind.value, exc)
            raise exc

        if not is_retryable(kind, retry_server_errors=self.policy.retry_server_errors):
            LOG.warning("%s failed (not retryable) attempt=%s kind=%s error=%s", label, attempt, kind.value, exc)
            raise exc

        delay_ms = self.policy.delay_ms(attempt, self._rand)
        LOG.warning(
            "%s failed attempt=%s max_attempts=%s retry_in=%.3fs kind=%s error=%s",
            label,
            attempt,
            self.policy.max_attempts,
            delay_ms / 1000.0,
            kind.value,
            exc,
        )
        return _Step(
            notice=StatusNotice(
                kind="retry",
                message=f"retrying after {kind.value} error",
                details={"attempt": attempt, "delay_ms": int(delay_ms), "reason": kind.value},
            ),
            delay_seconds=delay_ms / 1000.0,
        )

    def _rotate(self, exc: Exception, attempt: int, label: str) -> _Step:
        """Switch to another account after a rate/usage limit, or raise the limit."""
        reset_at = exc.reset_at() if isinstance(exc, RateLimitedError) else None
        replacement = None
        if self.accounts is not None and attempt < self.policy.max_attempts:
            replacement = self.accounts.rotate(reason=str(exc), resets_at=reset_at)
        if replacement is None:
            described = exc.describe_reset() if isinstance(exc, RateLimitedError) else "reset time unknown"
            LOG.warning("%s rate limited, no alternate account attempt=%s error=%s", label, attempt, exc)
            raise RateLimitedError(
                f"{exc}; no alternate account available, {described}",
                status_code=getattr(exc, "status_code", 429),
                usage_limit=getattr(exc, "usage_limit", None),
                snapshot=getattr(exc, "snapshot", None),
            ) from exc
        message = f"rate limited, switched to account {replacement.label or replacement.account_id or '-'}"
        LOG.warning("%s %s attempt=%s", label, message, attempt)
        return _Step(
            notice=StatusNotice(
                kind="account_rotated",
                message=message,
                details={"attempt": attempt, "account": replacement.label},
            ),
            delay_seconds=0.0,
        )

    async def _pause(self, seconds: float, cancel: asyncio.Event | None) -> None:
        """Sleep for the backoff delay; wake early and raise when cancelled."""
        if seconds > 0:
            if cancel is None:
                await self._sleep(seconds)
            else:
                sleeper = asyncio.ensure_future(self._sleep(seconds))
                waiter = asyncio.ensure_future(cancel.wait())
                try:
                    await asyncio.wait({sleeper, waiter}, return_when=asyncio.FIRST_COMPLETED)
                finally:
                    sleeper.cancel()
                    waiter.cancel()
        if cancel is not None and cancel.is_set():
            raise RequestCancelled("request cancelled during backoff")

    async def stream(
        self,
        open_stream: Callable[[Credentials | None, int], AsyncIterator[T]],
        *,
        label: str = "upstream stream",
        cancel: asyncio.Event | None = None,
    ) -> AsyncIterator[T | StatusNotice]:
        """Run a streaming operation with retries.

        A retry only happens while the failed attempt has not yielded anything;
        once output reached the caller, failures propagate unchanged.
        """
        attempt = 1
        while True:
            produced = False
            try:
                async for item in open_stream(self._credentials(), attempt):
                    produced = True
                    yield item
                return
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                if produced:
                    raise
                step = self._plan(exc, attempt, label)
            yield step.notice
            await self._pause(step.delay_seconds, cancel)
            attempt += 1
