"""Shared telemetry interfaces for crawl events."""
from __future__ import annotations

import logging
from typing import Callable, Dict, List, Tuple


logger = logging.getLogger(__name__)

WARNING = "warning"
PROCESS_LEVEL = "process-level"
NODES_REMAINING = "nodes-remaining"
NODE_PROCESSED = "node-processed"
WAITING_FOR_RATE_LIMIT = "waiting-for-rate-limit"

EVENT_KINDS = (WARNING, PROCESS_LEVEL, NODES_REMAINING, NODE_PROCESSED, WAITING_FOR_RATE_LIMIT)


class TelemetrySink:
    """Base class for sinks that consume structured crawl events.

    Payload fields per event kind:

    - ``warning``: ``node_id``, ``url``, ``message``, optional ``object``
    - ``process-level``: ``phase`` (``before``/``after``), ``level`` (1-based)
    - ``nodes-remaining``: ``remaining``
    - ``node-processed``: ``node_id``, ``part`` (``comment``/``replies``), ``updated``
    - ``waiting-for-rate-limit``: ``endpoint``, ``millis_to_wait``,
      ``millis_till_reset``, ``limit``, ``remaining``, ``reset``
    """

    def emit(self, event: str, payload: Dict[str, object]) -> None:  # pragma: no cover - interface only
        raise NotImplementedError


class NoOpTelemetry(TelemetrySink):
    """Telemetry sink that ignores all events."""

    def emit(self, event: str, payload: Dict[str, object]) -> None:  # pragma: no cover - intentionally empty
        return


class CallbackTelemetry(TelemetrySink):
    """Adapts a plain ``(event, payload)`` callable into a sink."""

    def __init__(self, callback: Callable[[str, Dict[str, object]], None]) -> None:
        self._callback = callback

    def emit(self, event: str, payload: Dict[str, object]) -> None:
        self._callback(event, payload)


class RecordingTelemetry(TelemetrySink):
    """Keeps every event in memory, in emission order."""

    def __init__(self) -> None:
        self.events: List[Tuple[str, Dict[str, object]]] = []

    def emit(self, event: str, payload: Dict[str, object]) -> None:
        self.events.append((event, dict(payload)))

    def of_kind(self, event: str) -> List[Dict[str, object]]:
        return [payload for kind, payload in self.events if kind == event]


def safe_emit(telemetry: TelemetrySink | None, event: str, payload: Dict[str, object]) -> None:
    """Emit to ``telemetry``, logging (never raising) if the sink fails."""

    if telemetry is None:
        return
    try:
        telemetry.emit(event, payload)
    except Exception:  # pragma: no cover - sink failure
        logger.exception("telemetry emit failed: %s", event)


__all__ = [
    "EVENT_KINDS",
    "NODES_REMAINING",
    "NODE_PROCESSED",
    "PROCESS_LEVEL",
    "WAITING_FOR_RATE_LIMIT",
    "WARNING",
    "CallbackTelemetry",
    "NoOpTelemetry",
    "RecordingTelemetry",
    "TelemetrySink",
    "safe_emit",
]
