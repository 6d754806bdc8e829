"""Protocol adapter interface and shared fetch helpers."""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ..cache import Cache
from ..fetcher import FetchResponse, Fetcher
from ..models import Comment, Commenter, Instant, Threadcap, ThreadcapError, now_instant
from ..telemetry import WARNING, TelemetrySink, safe_emit


logger = logging.getLogger(__name__)


class ProtocolError(ThreadcapError):
    """Raised when a remote object cannot be fetched or normalized."""


@dataclass(slots=True)
class ProtocolOptions:
    """Shared collaborators handed to every adapter call within one run.

    ``state`` is per-run scratch space, e.g. for a resolved conversation id.
    """

    fetcher: Fetcher
    cache: Cache
    update_time: Instant = field(default_factory=now_instant)
    telemetry: Optional[TelemetrySink] = None
    state: Dict[str, Any] = field(default_factory=dict)
    bearer_token: Optional[str] = None

    def warn(self, node_id: str, url: str, message: str, object: Any = None) -> None:
        payload: Dict[str, object] = {"node_id": node_id, "url": url, "message": message}
        if object is not None:
            payload["object"] = object
        safe_emit(self.telemetry, WARNING, payload)


class ProtocolImplementation:
    """Translates one remote API into comments, commenters, and reply ids."""

    name: str = ""

    def init_threadcap(self, url: str, opts: ProtocolOptions) -> Threadcap:  # pragma: no cover - interface only
        raise NotImplementedError

    def fetch_comment(self, id: str, opts: ProtocolOptions) -> Comment:  # pragma: no cover - interface only
        raise NotImplementedError

    def fetch_commenter(self, attributed_to: str, opts: ProtocolOptions) -> Commenter:  # pragma: no cover - interface only
        raise NotImplementedError

    def fetch_replies(self, id: str, opts: ProtocolOptions) -> List[str]:  # pragma: no cover - interface only
        raise NotImplementedError


def find_or_fetch_json(
    url: str,
    after: Instant,
    fetcher: Fetcher,
    cache: Cache,
    *,
    accept: str,
    authorization: Optional[str] = None,
) -> Any:
    response = find_or_fetch_text_response(
        url, after, fetcher, cache, accept=accept, authorization=authorization
    )
    if response.status != 200:
        logger.debug("%s answered %s", url, response.status)
        raise ProtocolError(
            f"Expected 200 response for {url}, found {response.status} body={response.body_text}"
        )
    content_type = response.header("content-type") or "<none>"
    if "json" not in content_type.lower():
        raise ProtocolError(
            f"Expected json response for {url}, found {content_type} body={response.body_text}"
        )
    try:
        return json.loads(response.body_text)
    except json.JSONDecodeError as exc:
        raise ProtocolError(f"Invalid json response for {url}: {exc}") from exc


def find_or_fetch_text_response(
    url: str,
    after: Instant,
    fetcher: Fetcher,
    cache: Cache,
    *,
    accept: str,
    authorization: Optional[str] = None,
) -> FetchResponse:
    existing = cache.get(url, after)
    if existing is not None:
        return existing
    headers = {"accept": accept}
    if authorization:
        headers["authorization"] = authorization
    response = fetcher(url, headers=headers)
    cache.put(url, now_instant(), response)
    return response


def dumps(value: Any) -> str:
    """Compact JSON rendering of a remote value for error messages."""

    return json.dumps(value, default=str, ensure_ascii=False)


__all__ = [
    "ProtocolError",
    "ProtocolImplementation",
    "ProtocolOptions",
    "dumps",
    "find_or_fetch_json",
    "find_or_fetch_text_response",
]
