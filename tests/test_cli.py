import json
from pathlib import Path

import pytest

from threadcap.cli import build_config, dump_node, main, parse_args
from threadcap.models import Node, Threadcap, load_threadcap


ROOT = "https://social.example/users/alice/statuses/1"
ALICE = "https://social.example/users/alice"
BOB = "https://social.example/users/bob"
A = "https://social.example/users/bob/statuses/2"


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ("THREADCAP_KEY_ID", "THREADCAP_PRIVATE_KEY_PEM", "THREADCAP_SIGNING_MODE", "THREADCAP_BEARER_TOKEN"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture()
def offline(monkeypatch, web, make_note, make_person):
    replies = {"type": "Collection", "first": {"type": "CollectionPage", "items": [A]}}
    web.add_json(ROOT, make_note(ROOT, attributed_to=ALICE, content="root post", replies=replies))
    web.add_json(A, make_note(A, attributed_to=BOB, content="a reply", replies=[]))
    web.add_json(ALICE, make_person(ALICE))
    web.add_json(BOB, make_person(BOB, name="Bob", preferred_username="bob"))

    class OfflineFetcher:
        def __init__(self, *, timeout_seconds: float = 30.0) -> None:
            self.fetches = 0

        def __call__(self, url, headers=None):
            self.fetches += 1
            return web(url, headers=headers)

    monkeypatch.setattr("threadcap.cli.RequestsFetcher", OfflineFetcher)
    return web


def test_parse_args_defaults() -> None:
    args = parse_args([ROOT])
    assert args.target == ROOT
    assert args.max_levels is None
    assert args.protocol is None
    assert not args.verbose


def test_main_captures_and_saves(offline, tmp_path: Path, capsys) -> None:
    out = tmp_path / "threadcap.json"
    main([ROOT, "--out", str(out), "--max-levels", "3"])

    lines = capsys.readouterr().out.strip().splitlines()
    assert lines[-1] == f"Saved threadcap json to: {out}"
    summary = json.loads(lines[-2])
    assert summary["nodes_processed"] > 0
    assert summary["processed"] == 2
    assert summary["max_level_processed"] == 2
    assert any("root post" in line for line in lines)
    assert any(line.startswith("  ") and "a reply" in line for line in lines)

    saved = load_threadcap(out)
    assert saved.nodes[ROOT].replies == [A]
    assert saved.commenters[BOB].name == "Bob"


def test_main_resumes_saved_file(offline, tmp_path: Path, capsys) -> None:
    out = tmp_path / "threadcap.json"
    main([ROOT, "--out", str(out), "--max-nodes", "1"])
    assert set(load_threadcap(out).nodes) == {ROOT}
    capsys.readouterr()

    main([str(out)])
    assert set(load_threadcap(out).nodes) == {ROOT, A}


def test_main_rejects_bad_config(offline, capsys) -> None:
    with pytest.raises(SystemExit) as excinfo:
        main([ROOT, "--key-id", "https://reader.example/actor#main-key"])
    assert excinfo.value.code == 1
    assert "Invalid configuration" in capsys.readouterr().err


def test_main_reports_capture_failure(offline, capsys) -> None:
    with pytest.raises(SystemExit) as excinfo:
        main(["https://social.example/missing"])
    assert excinfo.value.code == 2
    assert "404" in capsys.readouterr().err


def test_bearer_token_file(offline, tmp_path: Path) -> None:
    token_file = tmp_path / "token.txt"
    token_file.write_text("abc123\n", encoding="utf-8")
    assert build_config(parse_args([ROOT, "--bearer-token", str(token_file)])).bearer_token == "abc123"
    assert build_config(parse_args([ROOT, "--bearer-token", "inline-token"])).bearer_token == "inline-token"

    main([ROOT, "--bearer-token", str(token_file), "--out", str(tmp_path / "t.json")])
    fetched = dict(offline.calls)
    assert set(fetched) == {ROOT, A, ALICE, BOB}
    assert all("authorization" not in headers for headers in fetched.values())


def test_dump_node_skips_nodes_without_comment() -> None:
    threadcap = Threadcap(roots=[ROOT], nodes={ROOT: Node(comment_error="boom", comment_asof="x")})
    lines = []
    dump_node(ROOT, threadcap, 0, lines)
    assert lines == []
