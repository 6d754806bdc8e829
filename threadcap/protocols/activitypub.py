"""ActivityPub protocol adapter.

Real-world servers disagree on how a reply collection is exposed, so the
``replies`` value is first classified into one of a few known shapes
(:class:`RepliesLink`, :class:`InlineFirstPage`, :class:`BareArray`,
:class:`InlineItems`) and each shape is then handled on its own.
"""
from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Set, Union
from urllib.parse import urlencode, urlparse

from ..models import Attachment, Comment, Commenter, Icon, Instant, Threadcap
from .base import (
    ProtocolError,
    ProtocolImplementation,
    ProtocolOptions,
    dumps,
    find_or_fetch_json,
)


logger = logging.getLogger(__name__)

APPLICATION_ACTIVITY_JSON = "application/activity+json"
APPLICATION_JSON = "application/json"

ROOT_TYPES = ("Note", "Article", "Video", "PodcastEpisode", "Question")
PAGE_TYPES = ("CollectionPage", "OrderedCollectionPage")
ATTACHMENT_TYPES = ("Document", "Image")

_FQ_USERNAME_PATH = re.compile(r"^/(@[^/]+)$")


# ------------------------------------------------------------ reply shapes


@dataclass(frozen=True, slots=True)
class RepliesLink:
    """``replies`` is a url pointing at a collection to fetch."""

    url: str


@dataclass(frozen=True, slots=True)
class InlineFirstPage:
    """``replies.first`` is an inline page, possibly with a ``next`` link."""

    page: Dict[str, Any]


@dataclass(frozen=True, slots=True)
class BareArray:
    """``replies`` is a bare array (only ever valid when empty)."""

    items: List[Any]


@dataclass(frozen=True, slots=True)
class InlineItems:
    """``replies.items`` is present directly, with no pagination."""

    items: List[Any]


RepliesShape = Union[RepliesLink, InlineFirstPage, BareArray, InlineItems]


def classify_replies(replies: Any) -> RepliesShape:
    if isinstance(replies, str):
        return RepliesLink(replies)
    if isinstance(replies, dict) and replies.get("first"):
        first = replies["first"]
        if isinstance(first, dict) and first.get("type") in PAGE_TYPES:
            return InlineFirstPage(first)
        raise ProtocolError(
            f"Expected 'replies.first.items' array, or 'replies.first.next' string, found {dumps(first)}"
        )
    if isinstance(replies, list):
        return BareArray(replies)
    if isinstance(replies, dict):
        items = replies.get("items")
        if items is None:
            items = replies.get("orderedItems")
        if isinstance(items, list):
            return InlineItems(items)
    raise ProtocolError(
        f"Expected 'replies' to be a string, array or object with 'first' or 'items', found {dumps(replies)}"
    )


# ------------------------------------------------------------------ adapter


class ActivityPubProtocolImplementation(ProtocolImplementation):
    name = "activitypub"

    def init_threadcap(self, url: str, opts: ProtocolOptions) -> Threadcap:
        object = self._fetch_object(url, opts.update_time, opts)
        if not isinstance(object, dict):
            raise ProtocolError(f"Unexpected object: {dumps(object)}")
        object_type = object.get("type")
        object_id = object.get("id")
        if not isinstance(object_type, str):
            raise ProtocolError(f"Unexpected type for object: {dumps(object)}")
        if object_type not in ROOT_TYPES:
            raise ProtocolError(f"Unexpected type: {object_type}")
        if not isinstance(object_id, str):
            raise ProtocolError(f"Unexpected id for object: {dumps(object)}")
        return Threadcap(roots=[object_id], protocol=self.name)

    def fetch_comment(self, id: str, opts: ProtocolOptions) -> Comment:
        object = self._fetch_object(id, opts.update_time, opts)
        return compute_comment(object, id, opts)

    def fetch_commenter(self, attributed_to: str, opts: ProtocolOptions) -> Commenter:
        object = self._fetch_object(attributed_to, opts.update_time, opts)
        return compute_commenter(object, opts.update_time)

    def fetch_replies(self, id: str, opts: ProtocolOptions) -> List[str]:
        fetched = self._fetch_object(id, opts.update_time, opts)
        object = unwrap_activity_if_necessary(fetched, id, opts)
        is_podcast_episode = object.get("type") == "PodcastEpisode"
        # castopod and PeerTube expose an OrderedCollection url as 'comments'
        if is_podcast_episode:
            replies = object.get("comments")
        else:
            replies = object.get("replies")
            if replies is None:
                replies = object.get("comments")

        if replies is None:
            message = (
                "No 'comments' found on PodcastEpisode object"
                if is_podcast_episode
                else "No 'replies' found on object"
            )
            try_pleroma_workaround = "/objects/" in id
            if try_pleroma_workaround:
                message += ", trying Pleroma workaround"
            opts.warn(id, id, message, object)
            if try_pleroma_workaround:
                return mastodon_find_replies(id, opts)
            return []

        shape = classify_replies(replies)
        visited: Set[str] = set()
        if isinstance(shape, RepliesLink):
            return self._collect_from_link(shape.url, id, opts, visited)
        if isinstance(shape, InlineFirstPage):
            return self._collect_from_inline_page(shape.page, id, opts, visited)
        if isinstance(shape, BareArray):
            # Pleroma: "replies": [] on objects created via c2s
            if shape.items:
                raise ProtocolError(f"Expected 'replies' array to be empty, found {dumps(shape.items)}")
            return []
        rt: List[str] = []
        collect_replies_from_items(shape.items, rt, id, id, opts)
        return rt

    # ------------------------------------------------------------- internals
    def _fetch_object(self, url: str, after: Instant, opts: ProtocolOptions) -> Any:
        return find_or_fetch_json(url, after, opts.fetcher, opts.cache, accept=APPLICATION_ACTIVITY_JSON)

    def _collect_from_link(self, url: str, node_id: str, opts: ProtocolOptions, visited: Set[str]) -> List[str]:
        collection = self._fetch_object(url, opts.update_time, opts)
        collection_type = collection.get("type") if isinstance(collection, dict) else None
        if collection_type == "OrderedCollection":
            return self._collect_from_ordered_collection(collection, url, node_id, opts, visited)
        if collection_type == "OrderedCollectionPage":
            return self._collect_from_pages(url, node_id, opts, visited, page=collection)
        raise ProtocolError(f"Expected 'replies' to point to an OrderedCollection, found {dumps(collection)}")

    def _collect_from_ordered_collection(
        self,
        collection: Dict[str, Any],
        url: str,
        node_id: str,
        opts: ProtocolOptions,
        visited: Set[str],
    ) -> List[str]:
        rt: List[str] = []
        for prop in ("items", "orderedItems"):
            items = collection.get(prop)
            if items is None:
                continue
            if not isinstance(items, list):
                raise ProtocolError(f"Expected OrderedCollection '{prop}' to be an array, found {dumps(collection)}")
            collect_replies_from_items(items, rt, node_id, url, opts)
        first = collection.get("first")
        if first is None:
            if rt or collection.get("totalItems") == 0:
                return rt
            raise ProtocolError(f"Expected OrderedCollection 'first' to be present, found {dumps(collection)}")
        if isinstance(first, str):
            rt.extend(self._collect_from_pages(first, node_id, opts, visited))
            return rt
        if isinstance(first, dict) and first.get("type") in PAGE_TYPES:
            rt.extend(self._collect_from_inline_page(first, node_id, opts, visited))
            return rt
        raise ProtocolError(f"Expected OrderedCollection 'first' to be a string, found {dumps(collection)}")

    def _collect_from_inline_page(
        self, page: Dict[str, Any], node_id: str, opts: ProtocolOptions, visited: Set[str]
    ) -> List[str]:
        items = page.get("items")
        next_url = page.get("next")
        if items is None and page.get("orderedItems") is None and not next_url:
            raise ProtocolError(
                f"Expected 'replies.first.items' or 'replies.first.next' to be present, found {dumps(page)}"
            )
        page_id = page.get("id")
        if isinstance(page_id, str):
            visited.add(page_id)
        rt: List[str] = []
        _collect_page_items(page, rt, node_id, node_id, opts)
        if next_url:
            if not isinstance(next_url, str):
                raise ProtocolError(f"Expected 'replies.first.next' to be a string, found {dumps(next_url)}")
            if next_url not in visited:
                rt.extend(self._collect_from_pages(next_url, node_id, opts, visited))
        return rt

    def _collect_from_pages(
        self,
        url: str,
        node_id: str,
        opts: ProtocolOptions,
        visited: Set[str],
        page: Optional[Dict[str, Any]] = None,
    ) -> List[str]:
        replies: List[str] = []
        if page is None:
            page = self._fetch_object(url, opts.update_time, opts)
        visited.add(url)
        while True:
            if not isinstance(page, dict) or page.get("type") not in PAGE_TYPES:
                raise ProtocolError(
                    f"Expected page 'type' of CollectionPage or OrderedCollectionPage, found {dumps(page)}"
                )
            page_id = page.get("id")
            if isinstance(page_id, str):
                visited.add(page_id)
            _collect_page_items(page, replies, node_id, url, opts)
            next_url = page.get("next")
            if not next_url:
                return replies
            if not isinstance(next_url, str):
                raise ProtocolError(f"Expected page 'next' to be a string, found {dumps(page)}")
            if next_url in visited:
                # mastodon ends a chain with a page whose 'next' is itself
                logger.debug("Stopping pagination at already-visited page %s", next_url)
                return replies
            visited.add(next_url)
            url = next_url
            page = self._fetch_object(url, opts.update_time, opts)


def _collect_page_items(
    page: Dict[str, Any], out_replies: List[str], node_id: str, url: str, opts: ProtocolOptions
) -> None:
    items = page.get("items")
    if items is not None:
        if not isinstance(items, list):
            raise ProtocolError(f"Expected page 'items' to be an array, found {dumps(page)}")
        collect_replies_from_items(items, out_replies, node_id, url, opts)
    ordered_items = page.get("orderedItems")
    if page.get("type") == "OrderedCollectionPage" and ordered_items is not None:
        if not isinstance(ordered_items, list):
            raise ProtocolError(f"Expected page 'orderedItems' to be an array, found {dumps(page)}")
        collect_replies_from_items(ordered_items, out_replies, node_id, url, opts)


# ------------------------------------------------------------ normalization


def unwrap_activity_if_necessary(object: Any, id: str, opts: ProtocolOptions) -> Dict[str, Any]:
    if not isinstance(object, dict):
        raise ProtocolError(f"Expected an object for {id}, found {dumps(object)}")
    if object.get("type") == "Create" and isinstance(object.get("object"), dict):
        opts.warn(id, id, "Unwrapping a Create activity where an object was expected", object)
        return object["object"]
    return object


def collect_replies_from_items(
    items: List[Any], out_replies: List[str], node_id: str, url: str, opts: ProtocolOptions
) -> None:
    for item in items:
        if isinstance(item, str) and not item.startswith("{"):
            out_replies.append(item)
            continue
        if isinstance(item, str):
            try:
                item_obj = json.loads(item)
            except json.JSONDecodeError as exc:
                raise ProtocolError(f"Expected item to be a url or json object, found {item!r}") from exc
        else:
            item_obj = item
        item_id = item_obj.get("id") if isinstance(item_obj, dict) else None
        if not isinstance(item_id, str):
            raise ProtocolError(f"Expected item 'id' to be a string, found {dumps(item_obj)}")
        out_replies.append(item_id)
        if isinstance(item, str):
            opts.warn(node_id, url, "Found item incorrectly double encoded as a json string", item_obj)


def compute_comment(object: Any, id: str, opts: ProtocolOptions) -> Comment:
    object = unwrap_activity_if_necessary(object, id, opts)
    content = compute_content(object)
    summary = compute_summary(object)
    attachments = compute_attachments(object)
    url = compute_url(object.get("url")) or id  # pleroma: no url, but the id is viewable
    published = object.get("published")
    attributed_to = compute_attributed_to(object.get("attributedTo"))
    if not isinstance(published, str):
        raise ProtocolError(f"Expected 'published' to be a string, found {dumps(published)}")
    question_options = compute_question_options(object)
    return Comment(
        attributed_to=attributed_to,
        content=content,
        attachments=attachments,
        url=url,
        published=published,
        summary=summary,
        question_options=question_options,
    )


def compute_url(url: Any) -> Optional[str]:
    if url is None:
        return None
    if isinstance(url, str):
        return url
    if isinstance(url, list):
        for link in url:
            if (
                isinstance(link, dict)
                and link.get("type") == "Link"
                and link.get("mediaType") == "text/html"
                and isinstance(link.get("href"), str)
            ):
                return link["href"]
    raise ProtocolError(f"Expected 'url' to be a string, found {dumps(url)}")


def compute_attributed_to(attributed_to: Any) -> str:
    if isinstance(attributed_to, str):
        return attributed_to
    if isinstance(attributed_to, list) and attributed_to:
        if all(isinstance(v, str) for v in attributed_to):
            return attributed_to[0]
        if all(isinstance(v, dict) for v in attributed_to):
            for item in attributed_to:
                if item.get("type") == "Person" and isinstance(item.get("id"), str):
                    return item["id"]
            raise ProtocolError(
                f"Expected 'attributedTo' object array to have a Person with an 'id', found {dumps(attributed_to)}"
            )
    raise ProtocolError(
        f"Expected 'attributedTo' to be a string or non-empty string/object array, found {dumps(attributed_to)}"
    )


def compute_content(object: Dict[str, Any]) -> Dict[str, str]:
    rt = compute_language_tagged_values(object, "content", "contentMap")
    if rt is None:
        raise ProtocolError(f"Expected either 'contentMap' or 'content' to be present {dumps(object)}")
    return rt


def compute_summary(object: Dict[str, Any]) -> Optional[Dict[str, str]]:
    return compute_language_tagged_values(object, "summary", "summaryMap")


def compute_language_tagged_values(
    object: Dict[str, Any], string_prop: str, map_prop: str
) -> Optional[Dict[str, str]]:
    description = object.get("description")
    if object.get("type") == "PodcastEpisode" and isinstance(description, dict) and description.get("type") == "Note":
        object = description  # castopod embeds the Note inline as 'description'
    string_value = object.get(string_prop)
    map_value = object.get(map_prop)
    if string_value is not None and not isinstance(string_value, str):
        raise ProtocolError(f"Expected '{string_prop}' to be a string, found {dumps(string_value)}")
    if map_value is not None and not (
        isinstance(map_value, dict) and all(isinstance(v, str) for v in map_value.values())
    ):
        raise ProtocolError(f"Expected '{map_prop}' to be a string record, found {dumps(map_value)}")
    if map_value is not None:
        return dict(map_value)
    if string_value is not None:
        return {"und": string_value}
    name = object.get("name")
    if object.get("type") == "Video" and isinstance(name, str) and name.strip():
        return {"und": name}  # PeerTube
    return None


def compute_question_options(object: Dict[str, Any]) -> Optional[List[str]]:
    if object.get("type") != "Question":
        return None
    rt: Optional[List[str]] = None
    for prop in ("oneOf", "anyOf"):
        value = object.get(prop)
        if isinstance(value, list):
            for item in value:
                if isinstance(item, dict) and item.get("type") == "Note" and isinstance(item.get("name"), str):
                    rt = rt or []
                    rt.append(item["name"])
                else:
                    raise ProtocolError(f"Unsupported Question '{prop}' item: {dumps(item)}")
            return rt
        if value is not None:
            raise ProtocolError(f"Unsupported Question '{prop}' value: {dumps(value)}")
    return rt


def compute_attachments(object: Dict[str, Any]) -> List[Attachment]:
    raw = object.get("attachment")
    if not raw:
        return []
    attachments = raw if isinstance(raw, list) else [raw]
    return [compute_attachment(attachment) for attachment in attachments]


def compute_attachment(object: Any) -> Attachment:
    object_type = object.get("type") if isinstance(object, dict) else None
    if object_type not in ATTACHMENT_TYPES:
        raise ProtocolError(f"Expected attachment 'type' of Document or Image, found {dumps(object_type)}")
    media_type = object.get("mediaType")
    width = object.get("width")
    height = object.get("height")
    url = object.get("url")
    if not isinstance(media_type, str):
        raise ProtocolError(f"Expected attachment 'mediaType' to be a string, found {dumps(media_type)}")
    if width is not None and not _is_number(width):
        raise ProtocolError(f"Expected attachment 'width' to be a number, found {dumps(width)}")
    if height is not None and not _is_number(height):
        raise ProtocolError(f"Expected attachment 'height' to be a number, found {dumps(height)}")
    if not isinstance(url, str):
        raise ProtocolError(f"Expected attachment 'url' to be a string, found {dumps(url)}")
    return Attachment(media_type=media_type, url=url, width=width, height=height)


def compute_commenter(person: Any, asof: Instant) -> Commenter:
    if not isinstance(person, dict):
        raise ProtocolError(f"Expected person to be an object, found: {dumps(person)}")
    icon: Optional[Icon] = None
    icon_raw = person.get("icon")
    if icon_raw:
        if not isinstance(icon_raw, dict) or icon_raw.get("type") != "Image":
            raise ProtocolError(f"Expected person 'icon' to be an object, found: {dumps(icon_raw)}")
        icon = compute_icon(icon_raw)
    name = person.get("name")
    preferred_username = person.get("preferredUsername")
    if name is not None and not isinstance(name, str):
        raise ProtocolError(f"Expected person 'name' to be a string, found: {dumps(person)}")
    if preferred_username is not None and not isinstance(preferred_username, str):
        raise ProtocolError(f"Expected person 'preferredUsername' to be a string, found: {dumps(person)}")
    name_or_preferred_username = name or preferred_username
    if not name_or_preferred_username:
        raise ProtocolError(f"Expected person 'name' or 'preferredUsername', found: {dumps(person)}")
    ap_url = person.get("url")
    if ap_url is not None and not isinstance(ap_url, str):
        raise ProtocolError(f"Expected person 'url' to be a string, found: {dumps(ap_url)}")
    url = ap_url or person.get("id")
    if not isinstance(url, str):
        raise ProtocolError(f"Expected person 'url' or 'id' to be a string, found: {dumps(url)}")
    fq_username = compute_fq_username(url, preferred_username)
    return Commenter(
        name=name_or_preferred_username,
        asof=asof,
        url=url,
        fq_username=fq_username,
        icon=icon,
    )


def compute_icon(image: Dict[str, Any]) -> Icon:
    url = image.get("url")
    media_type = image.get("mediaType")
    if not isinstance(url, str):
        raise ProtocolError(f"Expected icon 'url' to be a string, found: {dumps(url)}")
    if media_type is not None and not isinstance(media_type, str):
        raise ProtocolError(f"Expected icon 'mediaType' to be a string, found: {dumps(media_type)}")
    return Icon(url=url, media_type=media_type)


def compute_fq_username(url: str, preferred_username: Optional[str]) -> str:
    """``https://example.org/@user`` -> ``@user@example.org``."""

    parsed = urlparse(url)
    match = _FQ_USERNAME_PATH.match(parsed.path)
    username = match.group(1) if match else preferred_username
    if not username:
        raise ProtocolError(f"Unable to compute username from url: {url}")
    if not parsed.hostname:
        raise ProtocolError(f"Unable to compute host from url: {url}")
    if not username.startswith("@"):
        username = f"@{username}"
    return f"{username}@{parsed.hostname}"


# ------------------------------------------------------ mastodon api fallback


def mastodon_find_replies(id: str, opts: ProtocolOptions) -> List[str]:
    """Find direct replies via a server's Mastodon-compatible status api."""

    status_id = _mastodon_find_status_id(id, opts)
    if not status_id:
        return []
    url = f"{_origin(id)}/api/v1/statuses/{status_id}/context"
    obj = find_or_fetch_json(
        url,
        opts.update_time,
        opts.fetcher,
        opts.cache,
        accept=APPLICATION_JSON,
        authorization=_authorization(opts),
    )
    rt: List[str] = []
    descendants = obj.get("descendants") if isinstance(obj, dict) else None
    if isinstance(descendants, list):
        for descendant in descendants:
            if (
                isinstance(descendant, dict)
                and isinstance(descendant.get("uri"), str)
                and descendant.get("in_reply_to_id") == status_id
            ):
                rt.append(descendant["uri"])
    return rt


def _mastodon_find_status_id(id: str, opts: ProtocolOptions) -> Optional[str]:
    url = f"{_origin(id)}/api/v2/search?{urlencode({'q': id, 'type': 'statuses'})}"
    obj = find_or_fetch_json(
        url,
        opts.update_time,
        opts.fetcher,
        opts.cache,
        accept=APPLICATION_JSON,
        authorization=_authorization(opts),
    )
    statuses = obj.get("statuses") if isinstance(obj, dict) else None
    if isinstance(statuses, list) and len(statuses) == 1:
        status = statuses[0]
        if isinstance(status, dict) and isinstance(status.get("id"), str) and status["id"]:
            return status["id"]
    return None


def _authorization(opts: ProtocolOptions) -> Optional[str]:
    return f"Bearer {opts.bearer_token}" if opts.bearer_token else None


def _origin(url: str) -> str:
    parsed = urlparse(url)
    return f"{parsed.scheme}://{parsed.netloc}"


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


__all__ = [
    "APPLICATION_ACTIVITY_JSON",
    "ActivityPubProtocolImplementation",
    "BareArray",
    "InlineFirstPage",
    "InlineItems",
    "RepliesLink",
    "RepliesShape",
    "classify_replies",
    "collect_replies_from_items",
    "compute_attributed_to",
    "compute_comment",
    "compute_commenter",
    "compute_fq_username",
    "mastodon_find_replies",
]
