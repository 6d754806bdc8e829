from datetime import datetime, timezone
from typing import List

from threadcap.fetcher import FetchResponse
from threadcap.rate_limit import (
    RateLimitedFetcher,
    RateLimiterInput,
    compute_default_millis_to_wait,
    compute_endpoint,
)
from threadcap.telemetry import WAITING_FOR_RATE_LIMIT, RecordingTelemetry


NOW = datetime(2024, 1, 1, 0, 0, 0, tzinfo=timezone.utc)


def limiter_input(remaining: int, millis_till_reset: int) -> RateLimiterInput:
    return RateLimiterInput(
        endpoint="social.example",
        limit=300,
        remaining=remaining,
        reset="2024-01-01T00:01:00.000Z",
        millis_till_reset=millis_till_reset,
    )


def test_default_policy_allows_bursting() -> None:
    assert compute_default_millis_to_wait(limiter_input(150, 60000)) == 0


def test_default_policy_waits_until_reset_when_exhausted() -> None:
    assert compute_default_millis_to_wait(limiter_input(0, 60000)) == 60000


def test_default_policy_spreads_remaining_calls() -> None:
    assert compute_default_millis_to_wait(limiter_input(50, 60000)) == 1200


def test_compute_endpoint_groups_by_host_or_route() -> None:
    assert compute_endpoint("https://social.example/objects/1") == ("social.example", False)
    assert compute_endpoint("https://api.twitter.com/2/tweets/1234567890") == ("/2/tweets/:id", True)


class ScriptedFetcher:
    def __init__(self, responses: List[FetchResponse]) -> None:
        self.responses = list(responses)
        self.calls: List[str] = []

    def __call__(self, url, headers=None):
        self.calls.append(url)
        return self.responses.pop(0)


def test_waits_before_next_call_to_tight_endpoint() -> None:
    headers = {
        "x-ratelimit-limit": "300",
        "x-ratelimit-remaining": "50",
        "x-ratelimit-reset": "2024-01-01T00:01:00.000Z",
    }
    inner = ScriptedFetcher([FetchResponse(status=200, headers=headers), FetchResponse(status=200)])
    telemetry = RecordingTelemetry()
    sleeps: List[float] = []
    fetcher = RateLimitedFetcher(inner, telemetry=telemetry, sleep=sleeps.append, clock=lambda: NOW)

    fetcher("https://social.example/objects/1")
    assert sleeps == []
    limits = fetcher.limits_for("social.example")
    assert limits is not None and limits.remaining == 50

    fetcher("https://social.example/objects/2")
    assert sleeps == [1.2]
    (event,) = telemetry.of_kind(WAITING_FOR_RATE_LIMIT)
    assert event["endpoint"] == "social.example"
    assert event["millis_to_wait"] == 1200
    assert event["millis_till_reset"] == 60000
    assert event["remaining"] == 50


def test_other_hosts_are_not_delayed() -> None:
    headers = {
        "x-ratelimit-limit": "300",
        "x-ratelimit-remaining": "0",
        "x-ratelimit-reset": "2024-01-01T00:01:00.000Z",
    }
    inner = ScriptedFetcher([FetchResponse(status=200, headers=headers), FetchResponse(status=200)])
    sleeps: List[float] = []
    fetcher = RateLimitedFetcher(inner, sleep=sleeps.append, clock=lambda: NOW)
    fetcher("https://social.example/objects/1")
    fetcher("https://other.example/objects/1")
    assert sleeps == []


def test_malformed_headers_leave_state_untouched() -> None:
    good = {
        "x-ratelimit-limit": "300",
        "x-ratelimit-remaining": "200",
        "x-ratelimit-reset": "2024-01-01T00:01:00.000Z",
    }
    bad = {
        "x-ratelimit-limit": "300",
        "x-ratelimit-remaining": "lots",
        "x-ratelimit-reset": "soon",
    }
    inner = ScriptedFetcher([FetchResponse(status=200, headers=good), FetchResponse(status=200, headers=bad)])
    fetcher = RateLimitedFetcher(inner, sleep=lambda _: None, clock=lambda: NOW)
    fetcher("https://social.example/objects/1")
    fetcher("https://social.example/objects/2")
    assert fetcher.limits_for("social.example").remaining == 200


def test_per_route_headers_use_epoch_reset() -> None:
    reset_epoch = int(datetime(2024, 1, 1, 0, 0, 30, tzinfo=timezone.utc).timestamp())
    headers = {
        "x-rate-limit-limit": "900",
        "x-rate-limit-remaining": "0",
        "x-rate-limit-reset": str(reset_epoch),
    }
    inner = ScriptedFetcher([FetchResponse(status=200, headers=headers), FetchResponse(status=200)])
    sleeps: List[float] = []
    fetcher = RateLimitedFetcher(inner, sleep=sleeps.append, clock=lambda: NOW)
    fetcher("https://api.twitter.com/2/tweets/1234567890")
    assert fetcher.limits_for("/2/tweets/:id").reset == "2024-01-01T00:00:30.000Z"
    fetcher("https://api.twitter.com/2/tweets/9876543210")
    assert sleeps == [30.0]


def test_custom_policy_is_consulted() -> None:
    headers = {
        "x-ratelimit-limit": "300",
        "x-ratelimit-remaining": "299",
        "x-ratelimit-reset": "2024-01-01T00:01:00.000Z",
    }
    inner = ScriptedFetcher([FetchResponse(status=200, headers=headers), FetchResponse(status=200)])
    seen: List[RateLimiterInput] = []
    sleeps: List[float] = []

    def policy(input: RateLimiterInput) -> int:
        seen.append(input)
        return 5

    fetcher = RateLimitedFetcher(inner, compute_millis_to_wait=policy, sleep=sleeps.append, clock=lambda: NOW)
    fetcher("https://social.example/a")
    fetcher("https://social.example/b")
    assert seen[0].limit == 300 and seen[0].remaining == 299
    assert sleeps == [0.005]
