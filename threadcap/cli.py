"""Command-line interface for capturing and refreshing a threadcap."""
from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import List
from urllib.parse import urlparse

from .cache import InMemoryCache
from .config import ConfigError, ThreadcapConfig
from .engine import MAX_LEVELS, make_threadcap, update_threadcap
from .fetcher import Fetcher, RequestsFetcher
from .models import Threadcap, ThreadcapError, load_threadcap, now_instant, save_threadcap
from .observability import CrawlObservability
from .protocols import Protocol
from .rate_limit import RateLimitedFetcher
from .signing import SigningAwareFetcher, load_private_key_file


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="threadcap",
        description="Enumerates a reply thread for a given root post url",
    )
    parser.add_argument(
        "target",
        help="Url to the root post, or a local path to a saved threadcap to resume",
    )
    parser.add_argument(
        "--max-levels",
        type=int,
        help=f"Stop after descending this many levels (positive integer, default: {MAX_LEVELS})",
    )
    parser.add_argument(
        "--max-nodes",
        type=int,
        help="Stop after processing this many nodes (positive integer, default: unlimited)",
    )
    parser.add_argument("--out", type=Path, help="Save the threadcap to this file")
    parser.add_argument("--start-node", help="Existing node id to start updating from")
    parser.add_argument(
        "--protocol",
        choices=[p.value for p in Protocol],
        help="Protocol used to capture the thread (default: activitypub)",
    )
    parser.add_argument(
        "--bearer-token",
        help="Bearer token for api calls needing auth (value or /path/to/token.txt)",
    )
    parser.add_argument("--key-id", help="Signing key id, e.g. https://social.example/actor#main-key")
    parser.add_argument("--private-key-pem", type=Path, help="Path to the signing private key pem")
    parser.add_argument("--signing-mode", choices=["always", "when-needed"])
    parser.add_argument("--events-log", type=Path, help="Append crawl events as JSONL to this file")
    parser.add_argument("--verbose", action="store_true", help="Log every fetch and event")
    return parser.parse_args(argv)


def is_url(value: str) -> bool:
    parsed = urlparse(value)
    return bool(parsed.scheme and parsed.netloc)


def build_config(args: argparse.Namespace) -> ThreadcapConfig:
    config = ThreadcapConfig()
    if args.key_id is not None:
        config.key_id = args.key_id
    if args.private_key_pem is not None:
        config.private_key_pem_path = args.private_key_pem
    if args.signing_mode is not None:
        config.signing_mode = args.signing_mode
    if args.bearer_token is not None:
        token = args.bearer_token
        config.bearer_token = Path(token).read_text(encoding="utf-8").strip() if token.startswith("/") else token
    config.max_levels = args.max_levels
    config.max_nodes = args.max_nodes
    config.validate()
    return config


def build_fetcher(
    config: ThreadcapConfig, observability: CrawlObservability
) -> tuple[RequestsFetcher, Fetcher]:
    base = RequestsFetcher(timeout_seconds=config.timeout_seconds)
    fetcher: Fetcher = base
    if config.signing_enabled:
        fetcher = SigningAwareFetcher(
            base,
            key_id=config.key_id,
            private_key=load_private_key_file(config.private_key_pem_path),
            mode=config.signing_mode,
        )
    return base, RateLimitedFetcher(fetcher, telemetry=observability)


def dump_node(id: str, threadcap: Threadcap, level: int, lines: List[str]) -> None:
    node = threadcap.nodes.get(id)
    if node is None or node.comment is None:
        return  # only nodes with comment info
    prefix = "  " * level
    commenter = threadcap.commenters.get(node.comment.attributed_to)
    name = commenter.name if commenter else node.comment.attributed_to
    fq_username = commenter.fq_username if commenter and commenter.fq_username else ""
    if level > 0:
        lines.append("")
    lines.append(f"{prefix}{name} {fq_username} {node.comment.published or ''}".rstrip())
    content = next(iter(node.comment.content.values()), "")
    lines.append(f"{prefix}{content}")
    for reply in node.replies or []:
        dump_node(reply, threadcap, level + 1, lines)


def main(argv: list[str] | None = None) -> None:
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    observability = CrawlObservability(args.events_log)
    try:
        config = build_config(args)
        base, fetcher = build_fetcher(config, observability)
    except (ConfigError, OSError, ValueError) as exc:
        print(f"Invalid configuration: {exc}", file=sys.stderr)
        raise SystemExit(1)

    cache = InMemoryCache()
    update_time = now_instant()
    target_is_url = is_url(args.target)
    try:
        if target_is_url:
            threadcap = make_threadcap(
                args.target,
                user_agent=config.user_agent,
                fetcher=fetcher,
                cache=cache,
                protocol=args.protocol,
                bearer_token=config.bearer_token,
                update_time=update_time,
                telemetry=observability,
            )
        else:
            threadcap = load_threadcap(args.target)
        result = update_threadcap(
            threadcap,
            update_time=update_time,
            user_agent=config.user_agent,
            fetcher=fetcher,
            cache=cache,
            max_levels=config.max_levels,
            max_nodes=config.max_nodes,
            start_node=args.start_node,
            telemetry=observability,
            bearer_token=config.bearer_token,
        )
    except ThreadcapError as exc:
        print(f"Threadcap failed: {exc}", file=sys.stderr)
        raise SystemExit(2)
    except OSError as exc:
        print(f"Unable to read {args.target}: {exc}", file=sys.stderr)
        raise SystemExit(1)

    print(threadcap.to_json())
    out_file = args.out if args.out else (None if target_is_url else Path(args.target))
    if out_file:
        save_threadcap(threadcap, out_file)

    lines: List[str] = []
    for root in threadcap.roots:
        lines.append("")
        dump_node(root, threadcap, 0, lines)
    print("\n".join(lines))

    summary = {
        "fetches": base.fetches,
        "nodes_processed": observability.nodes_processed,
        "max_level_processed": observability.max_level_processed,
        "cache_hits": cache.hits,
        **result.to_summary(),
    }
    print(json.dumps(summary))
    if out_file:
        print(f"Saved threadcap json to: {out_file}")


if __name__ == "__main__":  # pragma: no cover
    main()
