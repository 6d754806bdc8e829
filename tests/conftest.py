import json
from typing import Dict, List, Optional, Tuple

import pytest

from threadcap.fetcher import FetchResponse


class FakeWeb:
    """Dict-backed fetcher: url -> canned response, recording every call."""

    def __init__(self) -> None:
        self.responses: Dict[str, FetchResponse] = {}
        self.calls: List[Tuple[str, Dict[str, str]]] = []

    def add_json(
        self,
        url: str,
        obj: object,
        *,
        status: int = 200,
        content_type: str = "application/activity+json",
        headers: Optional[Dict[str, str]] = None,
    ) -> None:
        merged = {"content-type": content_type}
        merged.update(headers or {})
        self.responses[url] = FetchResponse(status=status, headers=merged, body_text=json.dumps(obj))

    def add_status(self, url: str, status: int, body: str = "") -> None:
        self.responses[url] = FetchResponse(status=status, headers={"content-type": "text/plain"}, body_text=body)

    def urls_fetched(self) -> List[str]:
        return [url for url, _ in self.calls]

    def __call__(self, url: str, headers=None) -> FetchResponse:
        self.calls.append((url, dict(headers or {})))
        response = self.responses.get(url)
        if response is None:
            return FetchResponse(status=404, headers={"content-type": "text/plain"}, body_text="not found")
        return response


@pytest.fixture()
def web() -> FakeWeb:
    return FakeWeb()


def note(id: str, *, attributed_to: str, replies=None, content: str = "hello", **extra) -> Dict[str, object]:
    obj: Dict[str, object] = {
        "id": id,
        "type": "Note",
        "attributedTo": attributed_to,
        "content": content,
        "published": "2024-01-01T00:00:00Z",
        "url": id.replace("/objects/", "/@alice/"),
    }
    if replies is not None:
        obj["replies"] = replies
    obj.update(extra)
    return obj


def person(id: str, *, name: str = "Alice", preferred_username: str = "alice") -> Dict[str, object]:
    return {
        "id": id,
        "type": "Person",
        "name": name,
        "preferredUsername": preferred_username,
        "url": f"https://social.example/@{preferred_username}",
        "icon": {"type": "Image", "mediaType": "image/png", "url": "https://social.example/avatar.png"},
    }


@pytest.fixture()
def make_note():
    return note


@pytest.fixture()
def make_person():
    return person
