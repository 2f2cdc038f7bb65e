import asyncio
import time

import pytest

from streamkoppler.accounts import Account, Credentials, StaticAccountPool
from streamkoppler.config import RetryConfig
from streamkoppler.errors import AuthInvalidError, RateLimitedError, RequestCancelled, TransientError
from streamkoppler.events import StatusNotice
from streamkoppler.rate_limits import RateLimitSnapshot
from streamkoppler.retry import RetryController, RetryPolicy


class _Sleeps:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


def _policy(**overrides) -> RetryPolicy:
    values = {"max_attempts": 3, "initial_delay_ms": 1000, "jitter_enabled": False}
    values.update(overrides)
    return RetryPolicy(**values)


def _account(account_id: str) -> Account:
    return Account(id=account_id, display_name=account_id, credentials=Credentials(bearer_token=f"tok-{account_id}", label=account_id))


class _FlakyStream:
    def __init__(self, failures: list[Exception], items: tuple[str, ...] = ("ok",)) -> None:
        self.failures = list(failures)
        self.items = items
        self.calls = 0
        self.seen_credentials: list[Credentials | None] = []

    async def __call__(self, credentials: Credentials | None, attempt: int):
        self.calls += 1
        self.seen_credentials.append(credentials)
        assert attempt == self.calls
        if self.failures:
            raise self.failures.pop(0)
        for item in self.items:
            yield item


def _drain(controller: RetryController, open_stream, cancel: asyncio.Event | None = None) -> list:
    async def run() -> list:
        return [item async for item in controller.stream(open_stream, cancel=cancel)]

    return asyncio.run(run())


def _notices(items: list) -> list[StatusNotice]:
    return [item for item in items if isinstance(item, StatusNotice)]


def test_delay_grows_exponentially_and_is_capped() -> None:
    policy = RetryPolicy(initial_delay_ms=1000, backoff_multiplier=2.0, max_delay_ms=30000, jitter_enabled=False)
    assert policy.delay_ms(1) == 1000
    assert policy.delay_ms(3) == 4000
    assert policy.delay_ms(10) == 30000


def test_jitter_adds_at_most_ten_percent() -> None:
    policy = RetryPolicy(initial_delay_ms=1000)
    assert policy.delay_ms(1, rand=lambda: 0.5) == pytest.approx(1050)
    assert policy.delay_ms(1, rand=lambda: 1.0) == pytest.approx(1100)


def test_policy_from_config() -> None:
    policy = RetryPolicy.from_config(RetryConfig(max_attempts=5, retry_server_errors=True))
    assert policy.max_attempts == 5
    assert policy.retry_server_errors is True


def test_transient_failures_are_retried_with_notices() -> None:
    sleeps = _Sleeps()
    operation = _FlakyStream([TransientError("reset"), TransientError("reset")])
    controller = RetryController(_policy(), sleep=sleeps)

    items = _drain(controller, operation)

    assert items[-1] == "ok"
    assert operation.calls == 3
    assert sleeps.delays == [1.0, 2.0]
    notices = _notices(items)
    assert [notice.kind for notice in notices] == ["retry", "retry"]
    assert notices[0].details == {"attempt": 1, "delay_ms": 1000, "reason": "transient"}


def test_attempts_are_bounded() -> None:
    sleeps = _Sleeps()
    operation = _FlakyStream([TransientError("boom")] * 5)
    controller = RetryController(_policy(), sleep=sleeps)

    with pytest.raises(TransientError):
        _drain(controller, operation)
    assert operation.calls == 3
    assert len(sleeps.delays) == 2


def test_auth_errors_are_not_retried() -> None:
    operation = _FlakyStream([AuthInvalidError("expired token", status_code=401)])
    controller = RetryController(_policy(), sleep=_Sleeps())

    with pytest.raises(AuthInvalidError):
        _drain(controller, operation)
    assert operation.calls == 1


def test_rate_limit_rotates_account_without_delay() -> None:
    sleeps = _Sleeps()
    pool = StaticAccountPool([_account("a"), _account("b")])
    operation = _FlakyStream([RateLimitedError("usage limit reached")])
    controller = RetryController(_policy(), accounts=pool, sleep=sleeps)

    items = _drain(controller, operation)

    assert items[-1] == "ok"
    assert [creds.label for creds in operation.seen_credentials] == ["a", "b"]
    assert sleeps.delays == []
    assert _notices(items) == [
        StatusNotice(
            kind="account_rotated",
            message="rate limited, switched to account b",
            details={"attempt": 1, "account": "b"},
        )
    ]


def test_rate_limit_without_alternate_fails_with_reset_estimate() -> None:
    pool = StaticAccountPool([_account("only")])
    limited = RateLimitedError("usage limit reached", snapshot=RateLimitSnapshot(reset_at=time.time() + 600))
    operation = _FlakyStream([limited])
    controller = RetryController(_policy(), accounts=pool, sleep=_Sleeps())

    with pytest.raises(RateLimitedError) as excinfo:
        _drain(controller, operation)
    assert "no alternate account available" in str(excinfo.value)
    assert "resets in" in str(excinfo.value)
    assert operation.calls == 1


def test_rate_limit_without_account_provider_is_surfaced_at_once() -> None:
    sleeps = _Sleeps()
    limited = RateLimitedError("slow down", snapshot=RateLimitSnapshot(reset_at=time.time() + 600))
    operation = _FlakyStream([limited])
    controller = RetryController(_policy(), sleep=sleeps)

    with pytest.raises(RateLimitedError) as excinfo:
        _drain(controller, operation)
    assert "resets in" in str(excinfo.value)
    assert operation.calls == 1
    assert sleeps.delays == []


def test_cancel_during_backoff_stops_retrying() -> None:
    cancel = asyncio.Event()

    async def sleep(seconds: float) -> None:
        cancel.set()
        await asyncio.sleep(10)

    operation = _FlakyStream([TransientError("reset")])
    controller = RetryController(_policy(), sleep=sleep)
    with pytest.raises(RequestCancelled):
        _drain(controller, operation, cancel=cancel)
    assert operation.calls == 1


def test_stream_retries_only_before_first_item() -> None:
    calls = {"count": 0}

    async def open_stream(credentials, attempt):
        calls["count"] += 1
        if attempt == 1:
            raise TransientError("connect failed")
        yield "a"
        yield "b"

    async def scenario() -> list:
        controller = RetryController(_policy(), sleep=_Sleeps())
        return [item async for item in controller.stream(open_stream)]

    items = asyncio.run(scenario())
    assert calls["count"] == 2
    assert isinstance(items[0], StatusNotice)
    assert items[1:] == ["a", "b"]


def test_stream_failure_after_output_is_not_retried() -> None:
    calls = {"count": 0}
    received: list = []

    async def open_stream(credentials, attempt):
        calls["count"] += 1
        yield "partial"
        raise TransientError("connection reset")

    async def scenario() -> None:
        controller = RetryController(_policy(), sleep=_Sleeps())
        async for item in controller.stream(open_stream):
            received.append(item)

    with pytest.raises(TransientError):
        asyncio.run(scenario())
    assert calls["count"] == 1
    assert received == ["partial"]
