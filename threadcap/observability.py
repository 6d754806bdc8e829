"""Structured observability sink for threadcap crawls."""
from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from .telemetry import (
    NODE_PROCESSED,
    NODES_REMAINING,
    PROCESS_LEVEL,
    WAITING_FOR_RATE_LIMIT,
    WARNING,
    TelemetrySink,
)


logger = logging.getLogger(__name__)


class CrawlObservability(TelemetrySink):
    """Logs crawl events, aggregates counters, and optionally appends JSONL."""

    def __init__(self, log_path: Path | str | None = None) -> None:
        self.log_path = Path(log_path) if log_path else None
        self.nodes_processed = 0
        self.nodes_updated = 0
        self.max_level_processed = 0
        self.nodes_remaining: Optional[int] = None
        self.warnings = 0
        self.rate_limit_waits = 0
        self.rate_limit_millis_waited = 0

    # ------------------------------------------------------------------ public
    def emit(self, event: str, payload: Dict[str, object]) -> None:
        entry = dict(payload)
        entry.setdefault("timestamp", datetime.now(timezone.utc).isoformat())
        entry["event"] = event
        self._update_counters(event, entry)
        self._log(event, entry)
        if self.log_path:
            self._append_log(entry)

    def summary(self) -> Dict[str, Any]:
        return {
            "nodes_processed": self.nodes_processed,
            "nodes_updated": self.nodes_updated,
            "max_level_processed": self.max_level_processed,
            "nodes_remaining": self.nodes_remaining,
            "warnings": self.warnings,
            "rate_limit_waits": self.rate_limit_waits,
            "rate_limit_millis_waited": self.rate_limit_millis_waited,
        }

    # ---------------------------------------------------------------- internal
    def _update_counters(self, event: str, entry: Dict[str, object]) -> None:
        if event == NODE_PROCESSED:
            self.nodes_processed += 1
            if entry.get("updated"):
                self.nodes_updated += 1
        elif event == PROCESS_LEVEL:
            level = _to_int(entry.get("level"))
            if level is not None:
                self.max_level_processed = max(self.max_level_processed, level)
        elif event == NODES_REMAINING:
            self.nodes_remaining = _to_int(entry.get("remaining"))
        elif event == WARNING:
            self.warnings += 1
        elif event == WAITING_FOR_RATE_LIMIT:
            self.rate_limit_waits += 1
            self.rate_limit_millis_waited += _to_int(entry.get("millis_to_wait")) or 0

    def _log(self, event: str, entry: Dict[str, object]) -> None:
        if event == WARNING:
            logger.warning(
                "%s (node %s, url %s)", entry.get("message"), entry.get("node_id"), entry.get("url")
            )
        elif event == WAITING_FOR_RATE_LIMIT:
            logger.info(
                "Waiting %.2fs before calling %s (limit=%s remaining=%s reset=%s)",
                (_to_int(entry.get("millis_to_wait")) or 0) / 1000,
                entry.get("endpoint"),
                entry.get("limit"),
                entry.get("remaining"),
                entry.get("reset"),
            )
        elif event == PROCESS_LEVEL:
            logger.info("Level %s %s", entry.get("level"), entry.get("phase"))
        else:
            logger.debug("%s %s", event, entry)

    def _append_log(self, entry: Dict[str, object]) -> None:
        self.log_path.parent.mkdir(parents=True, exist_ok=True)
        with self.log_path.open("a", encoding="utf-8") as handle:
            handle.write(json.dumps(entry, default=str) + "\n")


def _to_int(value: object) -> int | None:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    try:
        return int(str(value))
    except (TypeError, ValueError):
        return None


__all__ = ["CrawlObservability"]
