from __future__ import annotations

import threading

import pytest

from edgecache.cache_proxy.backend import (
    BucketRegionResolver,
    S3Downloader,
    build_client_factory,
    normalize_location,
    parse_object_key,
)
from edgecache.cache_proxy.errors import BackendError, InvalidKeyError, ObjectNotFoundError
from edgecache.common.settings import EdgeCacheSettings
from tests.utils.fake_s3 import FakeS3, client_error, unreachable


def test_parse_object_key_splits_on_first_separator() -> None:
    assert parse_object_key("bucket/dir/file.apk") == ("bucket", "dir/file.apk")


@pytest.mark.parametrize("key", ["no-separator", "/leading", "bucket/", ""])
def test_parse_object_key_rejects_malformed_keys(key: str) -> None:
    with pytest.raises(InvalidKeyError):
        parse_object_key(key)


@pytest.mark.parametrize(
    ("location", "expected"),
    [(None, "us-east-1"), ("", "us-east-1"), ("EU", "eu-west-1"), ("ap-south-1", "ap-south-1")],
)
def test_normalize_location(location, expected) -> None:
    assert normalize_location(location, "us-east-1") == expected


def test_region_is_resolved_once_per_bucket(fake_s3: FakeS3, downloader: S3Downloader) -> None:
    fake_s3.add_object("builds", "a.apk", b"aaa", location="eu-central-1")
    fake_s3.add_object("builds", "b.apk", b"bbb")

    first = downloader.download("builds/a.apk")
    second = downloader.download("builds/b.apk")

    assert first.body.read() == b"aaa"
    assert second.body.read() == b"bbb"
    assert fake_s3.location_calls == ["builds"]
    assert downloader.resolver.lookups == 1
    assert downloader.resolver.known_regions() == {"builds": "eu-central-1"}


def test_lookup_uses_bootstrap_region_and_fetch_uses_bucket_region(fake_s3: FakeS3, downloader: S3Downloader) -> None:
    fake_s3.add_object("media", "clip.mp4", b"frames", location="ap-southeast-2")

    downloader.download("media/clip.mp4")

    assert fake_s3.clients["us-east-1"].location_calls == ["media"]
    assert fake_s3.clients["us-east-1"].get_calls == []
    assert fake_s3.clients["ap-southeast-2"].get_calls == [("media", "clip.mp4")]


def test_empty_location_maps_to_bootstrap_region(fake_s3: FakeS3) -> None:
    fake_s3.add_object("legacy", "obj", b"x", location=None)
    resolver = BucketRegionResolver(fake_s3, bootstrap_region="us-west-2")

    assert resolver.region_for("legacy") == "us-west-2"


def test_download_reports_size_and_streams_body(fake_s3: FakeS3, downloader: S3Downloader) -> None:
    fake_s3.add_object("bucket", "file.bin", b"0123456789")

    result = downloader.download("bucket/file.bin")

    assert result.size == 10
    assert b"".join(result.iter_chunks(4)) == b"0123456789"
    result.close()
    assert fake_s3.clients["us-east-1"].bodies[0].closed


def test_download_without_content_length_reports_zero(fake_s3: FakeS3, downloader: S3Downloader) -> None:
    fake_s3.add_object("bucket", "file.bin", b"abc")
    fake_s3("us-east-1").omit_content_length = True

    assert downloader.download("bucket/file.bin").size == 0


def test_missing_object_raises_not_found(fake_s3: FakeS3, downloader: S3Downloader) -> None:
    fake_s3.add_object("bucket", "present", b"x")

    with pytest.raises(ObjectNotFoundError):
        downloader.download("bucket/absent")


def test_missing_bucket_raises_not_found(downloader: S3Downloader) -> None:
    with pytest.raises(ObjectNotFoundError):
        downloader.download("nowhere/file")


def test_access_denied_raises_backend_error(fake_s3: FakeS3, downloader: S3Downloader) -> None:
    fake_s3.add_object("private", "secret", b"x")
    fake_s3("us-east-1").get_error = client_error("AccessDenied")

    with pytest.raises(BackendError) as exc_info:
        downloader.download("private/secret")
    assert "AccessDenied" in str(exc_info.value)


def test_network_failure_during_lookup_raises_backend_error(fake_s3: FakeS3, downloader: S3Downloader) -> None:
    fake_s3.add_object("bucket", "obj", b"x")
    fake_s3("us-east-1").location_error = unreachable()

    with pytest.raises(BackendError):
        downloader.download("bucket/obj")
    assert downloader.resolver.known_regions() == {}


def test_invalid_key_never_reaches_backend(fake_s3: FakeS3, downloader: S3Downloader) -> None:
    with pytest.raises(InvalidKeyError):
        downloader.download("just-a-name")
    assert fake_s3.clients == {}


def test_concurrent_resolution_keeps_first_region(fake_s3: FakeS3, resolver: BucketRegionResolver) -> None:
    fake_s3.add_object("shared", "obj", b"x", location="eu-west-3")
    results: list[str] = []

    def resolve() -> None:
        results.append(resolver.region_for("shared"))

    threads = [threading.Thread(target=resolve) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert results == ["eu-west-3"] * 8
    assert resolver.known_regions() == {"shared": "eu-west-3"}


def test_build_client_factory_pins_region(monkeypatch: pytest.MonkeyPatch) -> None:
    created: list[dict] = []

    class DummySession:
        def client(self, service_name, **kwargs):  # noqa: D401 - mimic boto3 session
            created.append({"service": service_name, **kwargs})
            return object()

    monkeypatch.setattr("edgecache.cache_proxy.backend.boto3.session.Session", lambda: DummySession())
    settings = EdgeCacheSettings(s3_endpoint_url="http://minio:9000", s3_max_attempts=5)

    factory = build_client_factory(settings)
    factory("eu-north-1")

    assert created[0]["service"] == "s3"
    assert created[0]["region_name"] == "eu-north-1"
    assert created[0]["endpoint_url"] == "http://minio:9000"
    assert created[0]["config"].retries["max_attempts"] == 5


def test_build_client_factory_omits_unset_endpoint(monkeypatch: pytest.MonkeyPatch) -> None:
    created: list[dict] = []

    class DummySession:
        def client(self, service_name, **kwargs):  # noqa: D401 - mimic boto3 session
            created.append(kwargs)
            return object()

    monkeypatch.setattr("edgecache.cache_proxy.backend.boto3.session.Session", lambda: DummySession())

    build_client_factory(EdgeCacheSettings())("us-east-1")

    assert "endpoint_url" not in created[0]
