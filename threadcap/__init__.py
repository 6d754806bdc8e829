"""Threadcap: capture and incrementally refresh federated reply threads."""
from .cache import Cache, InMemoryCache
from .engine import MAX_LEVELS, InvalidUpdateError, UpdateResult, make_threadcap, update_threadcap
from .fetcher import FetchResponse, RequestsFetcher, make_fetcher_with_user_agent
from .models import (
    Attachment,
    Comment,
    Commenter,
    Icon,
    Node,
    Threadcap,
    ThreadcapError,
    ValidationError,
    load_threadcap,
    save_threadcap,
)
from .protocols import ProtocolError, UnsupportedProtocolError, is_valid_protocol
from .rate_limit import RateLimitedFetcher, compute_default_millis_to_wait
from .signing import SigningAwareFetcher, SigningMode
from .telemetry import NoOpTelemetry, TelemetrySink
from .version import __version__

__all__ = [
    "Attachment",
    "Cache",
    "Comment",
    "Commenter",
    "FetchResponse",
    "Icon",
    "InMemoryCache",
    "InvalidUpdateError",
    "MAX_LEVELS",
    "Node",
    "NoOpTelemetry",
    "ProtocolError",
    "RateLimitedFetcher",
    "RequestsFetcher",
    "SigningAwareFetcher",
    "SigningMode",
    "TelemetrySink",
    "Threadcap",
    "ThreadcapError",
    "UnsupportedProtocolError",
    "UpdateResult",
    "ValidationError",
    "__version__",
    "compute_default_millis_to_wait",
    "is_valid_protocol",
    "load_threadcap",
    "make_fetcher_with_user_agent",
    "make_threadcap",
    "save_threadcap",
    "update_threadcap",
]
