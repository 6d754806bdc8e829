"""Protocol tags and adapter dispatch."""
from __future__ import annotations

from enum import Enum
from typing import Dict, Optional

from ..models import ThreadcapError
from .activitypub import ActivityPubProtocolImplementation
from .base import ProtocolError, ProtocolImplementation, ProtocolOptions, find_or_fetch_json


class Protocol(str, Enum):
    ACTIVITYPUB = "activitypub"
    LIGHTNINGCOMMENTS = "lightningcomments"
    TWITTER = "twitter"
    BLUESKY = "bluesky"
    NOSTR = "nostr"


class UnsupportedProtocolError(ThreadcapError):
    """Raised when no adapter is registered for a protocol tag."""


DEFAULT_PROTOCOL = Protocol.ACTIVITYPUB

_IMPLEMENTATIONS: Dict[Protocol, ProtocolImplementation] = {
    Protocol.ACTIVITYPUB: ActivityPubProtocolImplementation(),
}


def is_valid_protocol(protocol: object) -> bool:
    return isinstance(protocol, str) and protocol in {p.value for p in Protocol}


def compute_protocol_implementation(protocol: Optional[str]) -> ProtocolImplementation:
    """Resolve the adapter for a threadcap's stored ``protocol`` tag (absent means ActivityPub)."""

    if protocol is None:
        return _IMPLEMENTATIONS[DEFAULT_PROTOCOL]
    if not is_valid_protocol(protocol):
        raise UnsupportedProtocolError(f"Unsupported protocol: {protocol}")
    implementation = _IMPLEMENTATIONS.get(Protocol(protocol))
    if implementation is None:
        raise UnsupportedProtocolError(f"No implementation available for protocol: {protocol}")
    return implementation


__all__ = [
    "DEFAULT_PROTOCOL",
    "Protocol",
    "ProtocolError",
    "ProtocolImplementation",
    "ProtocolOptions",
    "UnsupportedProtocolError",
    "compute_protocol_implementation",
    "find_or_fetch_json",
    "is_valid_protocol",
]
