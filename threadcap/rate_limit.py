"""Rate-limit aware fetcher wrapper."""
from __future__ import annotations

import logging
import re
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, Mapping, Optional
from urllib.parse import urlparse

from .fetcher import FetchResponse, Fetcher
from .models import Instant, instant_from_datetime
from .telemetry import WAITING_FOR_RATE_LIMIT, TelemetrySink, safe_emit


logger = logging.getLogger(__name__)

_ISO8601_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}(\.\d+)?Z$")
_NUMERIC_ID_PATTERN = re.compile(r"\d{4,}")

PER_ROUTE_HOSTS = ("api.twitter.com",)


@dataclass(frozen=True, slots=True)
class RateLimiterInput:
    endpoint: str
    limit: int
    remaining: int
    reset: Instant
    millis_till_reset: int


@dataclass(frozen=True, slots=True)
class EndpointLimits:
    limit: int
    remaining: int
    reset: Instant


def compute_default_millis_to_wait(input: RateLimiterInput) -> int:
    if input.remaining >= 100:
        return 0  # allow bursting, mastodon gives you 300 per period
    if input.remaining > 0:
        return round(input.millis_till_reset / input.remaining)
    return input.millis_till_reset


def compute_endpoint(url: str) -> tuple[str, bool]:
    """Return the rate-limit bucket for ``url`` and whether it is keyed per route."""

    parsed = urlparse(url)
    hostname = parsed.hostname or ""
    if hostname in PER_ROUTE_HOSTS:
        return _NUMERIC_ID_PATTERN.sub(":id", parsed.path), True
    return hostname, False


class RateLimitedFetcher:
    """Sleeps before calls to endpoints whose last response reported a tight quota.

    Limits are read from ``x-ratelimit-*`` headers (ISO-8601 reset), or from
    ``x-rate-limit-*`` headers (epoch-seconds reset) for per-route endpoints.
    """

    def __init__(
        self,
        fetcher: Fetcher,
        *,
        telemetry: TelemetrySink | None = None,
        compute_millis_to_wait: Callable[[RateLimiterInput], int] | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._fetcher = fetcher
        self._telemetry = telemetry
        self._compute_millis_to_wait = compute_millis_to_wait or compute_default_millis_to_wait
        self._sleep = sleep
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._lock = threading.Lock()
        self._endpoint_limits: Dict[str, EndpointLimits] = {}

    def limits_for(self, endpoint: str) -> Optional[EndpointLimits]:
        with self._lock:
            return self._endpoint_limits.get(endpoint)

    def __call__(self, url: str, headers: Mapping[str, str] | None = None) -> FetchResponse:
        endpoint, per_route = compute_endpoint(url)
        limits = self.limits_for(endpoint)
        if limits is not None:
            self._wait_if_necessary(endpoint, limits)

        response = self._fetcher(url, headers=headers)

        parsed = _parse_limits(response, per_route)
        if parsed is not None:
            with self._lock:
                self._endpoint_limits[endpoint] = parsed
            logger.debug(
                "Rate limits for %s: limit=%s remaining=%s reset=%s",
                endpoint,
                parsed.limit,
                parsed.remaining,
                parsed.reset,
            )
        return response

    def _wait_if_necessary(self, endpoint: str, limits: EndpointLimits) -> None:
        reset_at = _parse_iso8601(limits.reset)
        if reset_at is None:
            return
        millis_till_reset = int((reset_at - self._clock()).total_seconds() * 1000)
        millis_to_wait = self._compute_millis_to_wait(
            RateLimiterInput(
                endpoint=endpoint,
                limit=limits.limit,
                remaining=limits.remaining,
                reset=limits.reset,
                millis_till_reset=millis_till_reset,
            )
        )
        if millis_to_wait <= 0:
            return
        safe_emit(
            self._telemetry,
            WAITING_FOR_RATE_LIMIT,
            {
                "endpoint": endpoint,
                "millis_to_wait": millis_to_wait,
                "millis_till_reset": millis_till_reset,
                "limit": limits.limit,
                "remaining": limits.remaining,
                "reset": limits.reset,
            },
        )
        self._sleep(millis_to_wait / 1000)


def _parse_limits(response: FetchResponse, per_route: bool) -> Optional[EndpointLimits]:
    prefix = "x-rate-limit-" if per_route else "x-ratelimit-"
    limit = _try_parse_int(response.header(prefix + "limit"))
    remaining = _try_parse_int(response.header(prefix + "remaining"))
    reset_raw = response.header(prefix + "reset") or ""
    reset = _try_parse_epoch_seconds(reset_raw) if per_route else _try_parse_reset_instant(reset_raw)
    if limit is None or remaining is None or reset is None:
        return None
    return EndpointLimits(limit=limit, remaining=remaining, reset=reset)


def _try_parse_int(value: Optional[str]) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(value.strip())
    except ValueError:
        return None


def _try_parse_reset_instant(value: str) -> Optional[Instant]:
    value = value.strip()
    if not _ISO8601_PATTERN.match(value) or _parse_iso8601(value) is None:
        return None
    return value


def _try_parse_epoch_seconds(value: str) -> Optional[Instant]:
    seconds = _try_parse_int(value)
    if not seconds or seconds <= 0:
        return None
    return instant_from_datetime(datetime.fromtimestamp(seconds, tz=timezone.utc))


def _parse_iso8601(value: str) -> Optional[datetime]:
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


__all__ = [
    "EndpointLimits",
    "RateLimitedFetcher",
    "RateLimiterInput",
    "compute_default_millis_to_wait",
    "compute_endpoint",
]
