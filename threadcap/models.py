"""Serializable threadcap snapshot: roots, nodes, and commenters."""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional


Instant = str


class ThreadcapError(Exception):
    """Base exception for threadcap failures."""


class ValidationError(ThreadcapError):
    """Raised when a persisted threadcap payload is malformed."""

    def __init__(self, errors: Dict[str, str]):
        super().__init__("Threadcap validation failed")
        self.errors = errors

    def __str__(self) -> str:  # pragma: no cover - debug convenience
        return f"ValidationError(errors={self.errors!r})"


def now_instant() -> Instant:
    """Current time as an ISO-8601 instant at GMT with milliseconds, e.g. 2024-01-01T00:00:00.000Z."""

    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def instant_from_datetime(value: datetime) -> Instant:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


@dataclass(slots=True)
class Icon:
    url: str
    media_type: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"url": self.url}
        if self.media_type is not None:
            payload["mediaType"] = self.media_type
        return payload


@dataclass(slots=True)
class Attachment:
    media_type: str
    url: str
    width: Optional[int] = None
    height: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"mediaType": self.media_type}
        if self.width is not None:
            payload["width"] = self.width
        if self.height is not None:
            payload["height"] = self.height
        payload["url"] = self.url
        return payload


@dataclass(slots=True)
class Comment:
    """Inline comment info, enough to render the comment itself (no replies)."""

    attributed_to: str
    content: Dict[str, str]
    attachments: List[Attachment] = field(default_factory=list)
    url: Optional[str] = None
    published: Optional[str] = None
    summary: Optional[Dict[str, str]] = None
    question_options: Optional[List[str]] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {}
        if self.url is not None:
            payload["url"] = self.url
        if self.published is not None:
            payload["published"] = self.published
        payload["attachments"] = [attachment.to_dict() for attachment in self.attachments]
        payload["content"] = dict(self.content)
        payload["attributedTo"] = self.attributed_to
        if self.summary is not None:
            payload["summary"] = dict(self.summary)
        if self.question_options is not None:
            payload["questionOptions"] = list(self.question_options)
        return payload


@dataclass(slots=True)
class Commenter:
    name: str
    asof: Instant
    url: Optional[str] = None
    fq_username: Optional[str] = None
    icon: Optional[Icon] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {}
        if self.icon is not None:
            payload["icon"] = self.icon.to_dict()
        payload["name"] = self.name
        if self.url is not None:
            payload["url"] = self.url
        if self.fq_username is not None:
            payload["fqUsername"] = self.fq_username
        payload["asof"] = self.asof
        return payload


@dataclass(slots=True)
class Node:
    """One comment in the tree plus the ids of its direct replies.

    ``comment``/``comment_error`` are mutually exclusive once ``comment_asof`` is
    set, likewise ``replies``/``replies_error`` once ``replies_asof`` is set. An
    empty ``replies`` list means "no replies", unset means "never fetched".
    """

    comment: Optional[Comment] = None
    comment_error: Optional[str] = None
    comment_asof: Optional[Instant] = None
    replies: Optional[List[str]] = None
    replies_error: Optional[str] = None
    replies_asof: Optional[Instant] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {}
        if self.comment is not None:
            payload["comment"] = self.comment.to_dict()
        if self.comment_error is not None:
            payload["commentError"] = self.comment_error
        if self.comment_asof is not None:
            payload["commentAsof"] = self.comment_asof
        if self.replies is not None:
            payload["replies"] = list(self.replies)
        if self.replies_error is not None:
            payload["repliesError"] = self.replies_error
        if self.replies_asof is not None:
            payload["repliesAsof"] = self.replies_asof
        return payload


@dataclass(slots=True)
class Threadcap:
    """Snapshot of a reply tree, resumable across update passes.

    ``roots`` and ``protocol`` are fixed at creation; ``nodes`` and
    ``commenters`` only ever grow.
    """

    roots: List[str]
    nodes: Dict[str, Node] = field(default_factory=dict)
    commenters: Dict[str, Commenter] = field(default_factory=dict)
    protocol: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "roots": list(self.roots),
            "nodes": {node_id: node.to_dict() for node_id, node in self.nodes.items()},
            "commenters": {
                commenter_id: commenter.to_dict()
                for commenter_id, commenter in self.commenters.items()
            },
        }
        if self.protocol is not None:
            payload["protocol"] = self.protocol
        return payload

    def to_json(self, indent: int | None = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent, ensure_ascii=False)

    @classmethod
    def from_dict(cls, raw: Dict[str, object]) -> "Threadcap":
        errors: Dict[str, str] = {}
        if not isinstance(raw, dict):
            raise ValidationError({"": "threadcap must be an object"})

        roots_raw = raw.get("roots")
        if roots_raw is None and isinstance(raw.get("root"), str):
            roots_raw = [raw["root"]]  # single-root snapshots predate 'roots'
        if not isinstance(roots_raw, list) or not all(isinstance(v, str) for v in roots_raw):
            errors["roots"] = "roots must be an array of strings"
            roots_raw = []

        protocol = raw.get("protocol")
        if protocol is not None and not isinstance(protocol, str):
            errors["protocol"] = "protocol must be a string"
            protocol = None

        nodes: Dict[str, Node] = {}
        nodes_raw = raw.get("nodes") or {}
        if not isinstance(nodes_raw, dict):
            errors["nodes"] = "nodes must be an object"
            nodes_raw = {}
        for node_id, node_raw in nodes_raw.items():
            node = _node_from_dict(node_raw, f"nodes.{node_id}", errors)
            if node is not None:
                nodes[str(node_id)] = node

        commenters: Dict[str, Commenter] = {}
        commenters_raw = raw.get("commenters") or {}
        if not isinstance(commenters_raw, dict):
            errors["commenters"] = "commenters must be an object"
            commenters_raw = {}
        for commenter_id, commenter_raw in commenters_raw.items():
            commenter = _commenter_from_dict(commenter_raw, f"commenters.{commenter_id}", errors)
            if commenter is not None:
                commenters[str(commenter_id)] = commenter

        if errors:
            raise ValidationError(errors)

        return cls(roots=list(roots_raw), nodes=nodes, commenters=commenters, protocol=protocol)

    @classmethod
    def from_json(cls, text: str) -> "Threadcap":
        try:
            raw = json.loads(text)
        except json.JSONDecodeError as exc:
            raise ValidationError({"": f"invalid JSON: {exc}"}) from exc
        return cls.from_dict(raw)


def save_threadcap(threadcap: Threadcap, path: Path | str) -> Path:
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(threadcap.to_json(), encoding="utf-8")
    return target


def load_threadcap(path: Path | str) -> Threadcap:
    return Threadcap.from_json(Path(path).read_text(encoding="utf-8"))


# ----------------------------------------------------------------- parsing


def _optional_str(raw: Dict[str, Any], key: str, path: str, errors: Dict[str, str]) -> Optional[str]:
    value = raw.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        errors[f"{path}.{key}"] = f"{key} must be a string"
        return None
    return value


def _optional_int(raw: Dict[str, Any], key: str, path: str, errors: Dict[str, str]) -> Optional[int]:
    value = raw.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        errors[f"{path}.{key}"] = f"{key} must be a number"
        return None
    return value


def _string_map(value: object) -> bool:
    return isinstance(value, dict) and all(
        isinstance(k, str) and isinstance(v, str) for k, v in value.items()
    )


def _node_from_dict(raw: object, path: str, errors: Dict[str, str]) -> Optional[Node]:
    if not isinstance(raw, dict):
        errors[path] = "node must be an object"
        return None
    comment = None
    if raw.get("comment") is not None:
        comment = _comment_from_dict(raw["comment"], f"{path}.comment", errors)
    replies = raw.get("replies")
    if replies is not None and not (
        isinstance(replies, list) and all(isinstance(v, str) for v in replies)
    ):
        errors[f"{path}.replies"] = "replies must be an array of strings"
        replies = None
    return Node(
        comment=comment,
        comment_error=_optional_str(raw, "commentError", path, errors),
        comment_asof=_optional_str(raw, "commentAsof", path, errors),
        replies=list(replies) if replies is not None else None,
        replies_error=_optional_str(raw, "repliesError", path, errors),
        replies_asof=_optional_str(raw, "repliesAsof", path, errors),
    )


def _comment_from_dict(raw: object, path: str, errors: Dict[str, str]) -> Optional[Comment]:
    if not isinstance(raw, dict):
        errors[path] = "comment must be an object"
        return None
    attributed_to = raw.get("attributedTo")
    if not isinstance(attributed_to, str):
        errors[f"{path}.attributedTo"] = "attributedTo is required"
        return None
    content = raw.get("content")
    if not _string_map(content):
        errors[f"{path}.content"] = "content must be a string map"
        return None
    attachments: List[Attachment] = []
    for index, attachment_raw in enumerate(raw.get("attachments") or []):
        attachment_path = f"{path}.attachments[{index}]"
        if not isinstance(attachment_raw, dict):
            errors[attachment_path] = "attachment must be an object"
            continue
        media_type = attachment_raw.get("mediaType")
        url = attachment_raw.get("url")
        if not isinstance(media_type, str) or not isinstance(url, str):
            errors[attachment_path] = "attachment requires mediaType and url"
            continue
        attachments.append(
            Attachment(
                media_type=media_type,
                url=url,
                width=_optional_int(attachment_raw, "width", attachment_path, errors),
                height=_optional_int(attachment_raw, "height", attachment_path, errors),
            )
        )
    summary = raw.get("summary")
    if summary is not None and not _string_map(summary):
        errors[f"{path}.summary"] = "summary must be a string map"
        summary = None
    question_options = raw.get("questionOptions")
    if question_options is not None and not (
        isinstance(question_options, list) and all(isinstance(v, str) for v in question_options)
    ):
        errors[f"{path}.questionOptions"] = "questionOptions must be an array of strings"
        question_options = None
    return Comment(
        attributed_to=attributed_to,
        content=dict(content),
        attachments=attachments,
        url=_optional_str(raw, "url", path, errors),
        published=_optional_str(raw, "published", path, errors),
        summary=dict(summary) if summary is not None else None,
        question_options=list(question_options) if question_options is not None else None,
    )


def _commenter_from_dict(raw: object, path: str, errors: Dict[str, str]) -> Optional[Commenter]:
    if not isinstance(raw, dict):
        errors[path] = "commenter must be an object"
        return None
    name = raw.get("name")
    asof = raw.get("asof")
    if not isinstance(name, str) or not name:
        errors[f"{path}.name"] = "name is required"
        return None
    if not isinstance(asof, str):
        errors[f"{path}.asof"] = "asof is required"
        return None
    icon = None
    icon_raw = raw.get("icon")
    if icon_raw is not None:
        if isinstance(icon_raw, dict) and isinstance(icon_raw.get("url"), str):
            icon = Icon(url=icon_raw["url"], media_type=_optional_str(icon_raw, "mediaType", f"{path}.icon", errors))
        else:
            errors[f"{path}.icon"] = "icon requires a url"
    return Commenter(
        name=name,
        asof=asof,
        url=_optional_str(raw, "url", path, errors),
        fq_username=_optional_str(raw, "fqUsername", path, errors),
        icon=icon,
    )


__all__ = [
    "Attachment",
    "Comment",
    "Commenter",
    "Icon",
    "Instant",
    "Node",
    "Threadcap",
    "ThreadcapError",
    "ValidationError",
    "instant_from_datetime",
    "load_threadcap",
    "now_instant",
    "save_threadcap",
]
