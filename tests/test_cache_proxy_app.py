from __future__ import annotations

from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from edgecache.cache_proxy import app as app_module
from edgecache.cache_proxy.app import create_app
from edgecache.cache_proxy.backend import BucketRegionResolver
from edgecache.cache_proxy.errors import StorageError
from edgecache.common.settings import EdgeCacheSettings
from tests.utils.fake_s3 import FakeS3, client_error


METRICS_TOKEN = "scrape-token"


@pytest.fixture
def settings(tmp_path: Path) -> EdgeCacheSettings:
    return EdgeCacheSettings(
        cache_dir=tmp_path / "edgecache",
        max_size_gb=1,
        aws_region="us-east-1",
        metrics_token=METRICS_TOKEN,
    )


@pytest.fixture
def client(settings: EdgeCacheSettings, fake_s3: FakeS3) -> TestClient:
    fake_s3.add_object("builds", "release/app.apk", b"apk-payload")
    fake_s3.add_object("builds", "index.json", b'{"ok": true}')
    app = create_app(settings, resolver=BucketRegionResolver(fake_s3, bootstrap_region="us-east-1"))
    with TestClient(app) as test_client:
        yield test_client


def test_health(client: TestClient) -> None:
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_object_miss_then_hit(client: TestClient, fake_s3: FakeS3) -> None:
    first = client.get("/builds/release/app.apk")
    assert first.status_code == 200
    assert first.content == b"apk-payload"
    assert first.headers["X-Cache"] == "MISS"

    second = client.get("/builds/release/app.apk")
    assert second.status_code == 200
    assert second.content == b"apk-payload"
    assert second.headers["X-Cache"] == "HIT"
    assert fake_s3.get_calls == [("builds", "release/app.apk")]


def test_content_type_is_guessed_from_key(client: TestClient) -> None:
    response = client.get("/builds/index.json")
    assert response.status_code == 200
    assert response.headers["content-type"].startswith("application/json")


def test_stats_reflect_cache_activity(client: TestClient, settings: EdgeCacheSettings) -> None:
    client.get("/builds/release/app.apk")
    client.get("/builds/release/app.apk")

    body = client.get("/stats").json()

    assert body["hits"] == 1
    assert body["misses"] == 1
    assert body["evictions"] == 0
    assert body["entry_count"] == 1
    assert body["total_bytes"] == len(b"apk-payload")
    assert body["max_bytes"] == settings.max_size_bytes
    assert body["cache_dir"] == str(settings.cache_dir)
    assert body["known_buckets"] == 1
    assert body["inflight_downloads"] == 0


def test_missing_object_returns_404(client: TestClient) -> None:
    response = client.get("/builds/absent.bin")
    assert response.status_code == 404
    assert "detail" in response.json()


def test_key_without_object_path_returns_404(client: TestClient, fake_s3: FakeS3) -> None:
    response = client.get("/just-a-bucket")
    assert response.status_code == 404
    assert fake_s3.get_calls == []


def test_backend_failure_returns_404(client: TestClient, fake_s3: FakeS3) -> None:
    fake_s3("us-east-1").get_error = client_error("AccessDenied")

    response = client.get("/builds/release/app.apk")

    assert response.status_code == 404
    assert client.get("/stats").json()["entry_count"] == 0


def test_storage_failure_returns_500(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    store = client.app.state.cache_state.store

    def failing_put(key, data):
        raise StorageError("disk full", key=key)

    monkeypatch.setattr(store, "put", failing_put)

    response = client.get("/builds/release/app.apk")
    assert response.status_code == 500


@pytest.mark.parametrize("method", ["post", "put", "delete", "patch"])
def test_mutating_methods_are_rejected(client: TestClient, method: str) -> None:
    response = getattr(client, method)("/builds/release/app.apk")
    assert response.status_code == 405
    assert response.headers["allow"] == "GET"


def test_cache_survives_restart(settings: EdgeCacheSettings, fake_s3: FakeS3) -> None:
    fake_s3.add_object("builds", "persisted.bin", b"kept")
    resolver = BucketRegionResolver(fake_s3, bootstrap_region="us-east-1")
    with TestClient(create_app(settings, resolver=resolver)) as first:
        assert first.get("/builds/persisted.bin").headers["X-Cache"] == "MISS"

    with TestClient(create_app(settings, resolver=resolver)) as second:
        response = second.get("/builds/persisted.bin")

    assert response.headers["X-Cache"] == "HIT"
    assert response.content == b"kept"
    assert len(fake_s3.get_calls) == 1


def test_metrics_requires_token(client: TestClient) -> None:
    assert client.get("/metrics").status_code == 401
    assert client.get("/metrics", headers={"Authorization": "Bearer wrong"}).status_code == 401


def test_metrics_renders_registry(client: TestClient) -> None:
    client.get("/builds/release/app.apk")

    response = client.get("/metrics", headers={"Authorization": f"Bearer {METRICS_TOKEN}"})

    assert response.status_code == 200
    assert "edgecache_requests_total" in response.text
    assert "edgecache_entries 1.0" in response.text
    assert 'edgecache_request_latency_seconds_bucket{le="+Inf"}' in response.text


def test_metrics_without_token_is_loopback_only(tmp_path: Path, fake_s3: FakeS3) -> None:
    settings = EdgeCacheSettings(cache_dir=tmp_path / "open", max_size_gb=1)
    app = create_app(settings, resolver=BucketRegionResolver(fake_s3))
    with TestClient(app) as test_client:
        response = test_client.get("/metrics")
    assert response.status_code == 403


def test_object_evicted_before_response_returns_404(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    coordinator = client.app.state.cache_state.coordinator
    fetch = coordinator.fetch

    async def fetch_then_evict(key):
        result = await fetch(key)
        result.path.unlink()
        return result

    monkeypatch.setattr(coordinator, "fetch", fetch_then_evict)

    response = client.get("/builds/release/app.apk")

    assert response.status_code == 404


def test_object_evicted_while_streaming_is_still_served(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    counter = app_module.BYTES_SERVED_COUNTER
    count_bytes = counter.inc
    store = client.app.state.cache_state.store

    def evict_then_count(amount: float = 1.0) -> None:
        for path in store.files_dir.iterdir():
            path.unlink()
        count_bytes(amount)

    monkeypatch.setattr(counter, "inc", evict_then_count)

    response = client.get("/builds/release/app.apk")

    assert response.status_code == 200
    assert response.content == b"apk-payload"
    assert response.headers["content-length"] == str(len(b"apk-payload"))
    assert response.headers["X-Cache"] == "MISS"
