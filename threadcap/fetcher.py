"""HTTP fetcher contract and the requests-backed implementation."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, Mapping, Optional

import requests

from .version import __version__


logger = logging.getLogger(__name__)


@dataclass(slots=True)
class FetchResponse:
    """Fully-read HTTP response; header names are lower-cased."""

    status: int
    headers: Dict[str, str] = field(default_factory=dict)
    body_text: str = ""

    def header(self, name: str) -> Optional[str]:
        return self.headers.get(name.lower())


# fetcher(url, headers=None) -> FetchResponse
Fetcher = Callable[..., FetchResponse]


def normalize_headers(headers: Mapping[str, str] | None) -> Dict[str, str]:
    return {str(name).lower(): str(value) for name, value in (headers or {}).items()}


def compute_user_agent(origin: str | None = None) -> str:
    pieces = [f"python-requests/{requests.__version__}"]
    if origin:
        pieces.append(f"+{origin}")
    return f"threadcap/{__version__} ({'; '.join(pieces)})"


class RequestsFetcher:
    """GETs urls with a shared ``requests.Session`` and counts live fetches."""

    def __init__(
        self,
        *,
        timeout_seconds: float = 30.0,
        session: requests.Session | None = None,
    ) -> None:
        self.timeout_seconds = timeout_seconds
        self.session = session or requests.Session()
        self.fetches = 0

    def __call__(self, url: str, headers: Mapping[str, str] | None = None) -> FetchResponse:
        logger.debug("fetching: %s", url)
        response = self.session.get(
            url,
            headers=dict(headers or {}),
            timeout=self.timeout_seconds,
        )
        self.fetches += 1
        logger.debug("%s %s", response.status_code, response.url)
        return FetchResponse(
            status=response.status_code,
            headers=normalize_headers(response.headers),
            body_text=response.text,
        )


def make_fetcher_with_user_agent(fetcher: Fetcher, user_agent: str) -> Fetcher:
    """Wrap ``fetcher`` so every request carries ``user-agent``."""

    user_agent = (user_agent or "").strip()
    if not user_agent:
        raise ValueError("Expected non-blank user-agent")

    def fetch(url: str, headers: Mapping[str, str] | None = None) -> FetchResponse:
        merged = dict(headers or {})
        merged["user-agent"] = user_agent
        return fetcher(url, headers=merged)

    return fetch


__all__ = [
    "FetchResponse",
    "Fetcher",
    "RequestsFetcher",
    "compute_user_agent",
    "make_fetcher_with_user_agent",
    "normalize_headers",
]
