from __future__ import annotations

from pathlib import Path

import pytest

from edgecache.cache_proxy.backend import BucketRegionResolver, S3Downloader
from edgecache.cache_proxy.store import DiskLRUCache
from tests.utils.fake_s3 import FakeS3


@pytest.fixture
def fake_s3() -> FakeS3:
    return FakeS3()


@pytest.fixture
def resolver(fake_s3: FakeS3) -> BucketRegionResolver:
    return BucketRegionResolver(fake_s3, bootstrap_region="us-east-1")


@pytest.fixture
def downloader(resolver: BucketRegionResolver) -> S3Downloader:
    return S3Downloader(resolver)


@pytest.fixture
def cache_dir(tmp_path: Path) -> Path:
    return tmp_path / "cache"


@pytest.fixture
def store(cache_dir: Path) -> DiskLRUCache:
    return DiskLRUCache(cache_dir, max_size_bytes=10 * 1024)
