import threading

from threadcap.cache import InMemoryCache
from threadcap.fetcher import FetchResponse

T0 = "2024-01-01T00:00:00.000Z"
T1 = "2024-01-01T00:00:01.000Z"
T2 = "2024-01-01T00:00:02.000Z"


def test_get_returns_entry_fetched_after_threshold() -> None:
    cache = InMemoryCache()
    response = FetchResponse(status=200, headers={}, body_text="{}")
    cache.put("https://a.example/1", T1, response)
    assert cache.get("https://a.example/1", T0) is response
    assert cache.hits == 1


def test_get_misses_when_entry_is_not_newer_than_threshold() -> None:
    cache = InMemoryCache()
    cache.put("https://a.example/1", T1, FetchResponse(status=200))
    assert cache.get("https://a.example/1", T1) is None
    assert cache.get("https://a.example/1", T2) is None
    assert cache.get("https://a.example/unknown", T0) is None
    assert cache.hits == 0


def test_put_replaces_prior_entry() -> None:
    cache = InMemoryCache()
    cache.put("id", T0, FetchResponse(status=500))
    cache.put("id", T2, FetchResponse(status=200))
    assert len(cache) == 1
    assert cache.get("id", T1).status == 200


def test_hit_hook_receives_entry_details() -> None:
    seen = []
    cache = InMemoryCache(on_returning_cached_response=lambda *args: seen.append(args))
    response = FetchResponse(status=200)
    cache.put("id", T1, response)
    cache.get("id", T0)
    assert seen == [("id", T0, T1, response)]


def test_hits_counted_across_threads() -> None:
    cache = InMemoryCache()
    cache.put("id", T2, FetchResponse(status=200))

    def read() -> None:
        for _ in range(500):
            cache.get("id", T0)
            cache.get("id", T2)

    threads = [threading.Thread(target=read) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    assert cache.hits == 8 * 500
