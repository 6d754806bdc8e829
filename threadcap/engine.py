"""Level-by-level, resumable threadcap update engine."""
from __future__ import annotations

import logging
import math
import traceback
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from .cache import Cache
from .fetcher import Fetcher, make_fetcher_with_user_agent
from .models import Instant, Node, Threadcap, ThreadcapError, now_instant
from .protocols import ProtocolImplementation, ProtocolOptions, compute_protocol_implementation
from .telemetry import (
    NODE_PROCESSED,
    NODES_REMAINING,
    PROCESS_LEVEL,
    TelemetrySink,
    safe_emit,
)


logger = logging.getLogger(__name__)

MAX_LEVELS = 1000  # deepest reply chain we will ever descend


class InvalidUpdateError(ThreadcapError):
    """Raised when update arguments are rejected before any mutation."""


@dataclass(slots=True)
class UpdateResult:
    update_time: Instant
    processed: int
    levels_processed: int
    stopped_reason: Optional[str] = None

    def to_summary(self) -> Dict[str, object]:
        return {
            "update_time": self.update_time,
            "processed": self.processed,
            "levels_processed": self.levels_processed,
            "stopped_reason": self.stopped_reason,
        }


def make_threadcap(
    url: str,
    *,
    user_agent: str,
    fetcher: Fetcher,
    cache: Cache,
    protocol: Optional[str] = None,
    bearer_token: Optional[str] = None,
    update_time: Optional[Instant] = None,
    telemetry: TelemetrySink | None = None,
) -> Threadcap:
    """Create an empty threadcap rooted at the object behind ``url``."""

    implementation = compute_protocol_implementation(protocol)
    opts = ProtocolOptions(
        fetcher=_with_user_agent(fetcher, user_agent),
        cache=cache,
        update_time=update_time or now_instant(),
        telemetry=telemetry,
        bearer_token=bearer_token,
    )
    threadcap = implementation.init_threadcap(url, opts)
    logger.info("Created %s threadcap with roots %s", threadcap.protocol, threadcap.roots)
    return threadcap


def update_threadcap(
    threadcap: Threadcap,
    *,
    update_time: Instant,
    user_agent: str,
    fetcher: Fetcher,
    cache: Cache,
    max_levels: Optional[int] = None,
    max_nodes: Optional[int] = None,
    start_node: Optional[str] = None,
    keep_going: Callable[[], bool] | None = None,
    telemetry: TelemetrySink | None = None,
    bearer_token: Optional[str] = None,
) -> UpdateResult:
    """Refresh ``threadcap`` in place, one breadth-first level at a time.

    Nodes whose comment/replies were last fetched at or after ``update_time``
    are skipped, so re-running with the same ``update_time`` fetches nothing.
    ``max_nodes`` bounds the number of nodes processed in this run;
    ``keep_going`` is polled after every node.
    """

    max_level = _clamp_levels(max_levels)
    node_budget = _clamp_nodes(max_nodes)
    if start_node is not None and start_node not in threadcap.nodes:
        raise InvalidUpdateError(f"Invalid start node: {start_node}")
    wrapped = _with_user_agent(fetcher, user_agent)

    result = UpdateResult(update_time=update_time, processed=0, levels_processed=0)
    if max_level == 0 or node_budget == 0:
        return result

    implementation = compute_protocol_implementation(threadcap.protocol)
    opts = ProtocolOptions(
        fetcher=wrapped,
        cache=cache,
        update_time=update_time,
        telemetry=telemetry,
        bearer_token=bearer_token,
    )

    ids_by_level: List[List[str]] = [[start_node] if start_node else list(threadcap.roots)]
    remaining = len(ids_by_level[0])
    level = 0
    while level < len(ids_by_level):
        safe_emit(telemetry, PROCESS_LEVEL, {"phase": "before", "level": level + 1})
        next_level = level + 1
        process_replies = next_level < max_level
        for node_id in ids_by_level[level]:
            node = process_node(node_id, process_replies, threadcap, implementation, opts)
            remaining -= 1
            result.processed += 1
            if node_budget is not None and result.processed >= node_budget:
                result.stopped_reason = "max_nodes"
                logger.info("Stopping after %s nodes (max_nodes reached)", result.processed)
                return result
            if keep_going is not None and not keep_going():
                result.stopped_reason = "cancelled"
                logger.info("Stopping after %s nodes (keep_going returned false)", result.processed)
                return result
            if node.replies and process_replies:
                if len(ids_by_level) == next_level:
                    ids_by_level.append([])
                ids_by_level[next_level].extend(node.replies)
                remaining += len(node.replies)
            safe_emit(telemetry, NODES_REMAINING, {"remaining": remaining})
        safe_emit(telemetry, PROCESS_LEVEL, {"phase": "after", "level": level + 1})
        result.levels_processed = next_level
        level = next_level

    logger.info(
        "Updated threadcap: %s nodes processed across %s levels",
        result.processed,
        result.levels_processed,
    )
    return result


def process_node(
    id: str,
    process_replies: bool,
    threadcap: Threadcap,
    implementation: ProtocolImplementation,
    opts: ProtocolOptions,
) -> Node:
    """Refresh one node's comment (with its commenter) and, optionally, its replies."""

    node = threadcap.nodes.get(id)
    if node is None:
        node = Node()
        threadcap.nodes[id] = node

    update_time = opts.update_time
    update_comment = node.comment_asof is None or node.comment_asof < update_time
    if update_comment:
        # a failed commenter fetch also discards the freshly fetched comment
        try:
            node.comment = implementation.fetch_comment(id, opts)
            attributed_to = node.comment.attributed_to
            existing = threadcap.commenters.get(attributed_to)
            if existing is None or existing.asof < update_time:
                threadcap.commenters[attributed_to] = implementation.fetch_commenter(attributed_to, opts)
            node.comment_error = None
        except Exception as exc:
            node.comment = None
            node.comment_error = _format_error(exc)
            logger.debug("Comment fetch failed for %s: %s", id, exc)
        node.comment_asof = update_time

    safe_emit(opts.telemetry, NODE_PROCESSED, {"node_id": id, "part": "comment", "updated": update_comment})

    if process_replies:
        update_replies = node.replies_asof is None or node.replies_asof < update_time
        if update_replies:
            try:
                node.replies = list(implementation.fetch_replies(id, opts))
                node.replies_error = None
            except Exception as exc:
                node.replies = None
                node.replies_error = _format_error(exc)
                logger.debug("Replies fetch failed for %s: %s", id, exc)
            node.replies_asof = update_time
        safe_emit(opts.telemetry, NODE_PROCESSED, {"node_id": id, "part": "replies", "updated": update_replies})

    return node


def _with_user_agent(fetcher: Fetcher, user_agent: str) -> Fetcher:
    try:
        return make_fetcher_with_user_agent(fetcher, user_agent)
    except ValueError as exc:
        raise InvalidUpdateError(str(exc)) from exc


def _clamp_levels(max_levels: Optional[int]) -> int:
    if max_levels is None:
        return MAX_LEVELS
    return min(max(_to_rounded_int("max_levels", max_levels), 0), MAX_LEVELS)


def _clamp_nodes(max_nodes: Optional[int]) -> Optional[int]:
    if max_nodes is None:
        return None
    return max(_to_rounded_int("max_nodes", max_nodes), 0)


def _to_rounded_int(name: str, value: object) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise InvalidUpdateError(f"'{name}' should be a number, found {value!r}")
    if not math.isfinite(value):
        raise InvalidUpdateError(f"'{name}' should be a finite number, found {value!r}")
    return int(round(value))


def _format_error(exc: BaseException) -> str:
    return "".join(traceback.format_exception(type(exc), exc, exc.__traceback__)).rstrip()


__all__ = [
    "InvalidUpdateError",
    "MAX_LEVELS",
    "UpdateResult",
    "make_threadcap",
    "process_node",
    "update_threadcap",
]
