"""Region-aware S3 fetcher used to fill the cache on a miss."""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Any, Callable, Iterator, Optional

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError
import structlog

from ..common.settings import EdgeCacheSettings
from .errors import BackendError, InvalidKeyError, ObjectNotFoundError


LOGGER = structlog.get_logger("edgecache.cache_proxy.backend")

DEFAULT_BOOTSTRAP_REGION = "us-east-1"
# GetBucketLocation still reports a few buckets by their pre-region names.
LEGACY_LOCATIONS = {"EU": "eu-west-1"}
NOT_FOUND_CODES = {"404", "NoSuchKey", "NoSuchBucket", "NotFound"}

ClientFactory = Callable[[str], Any]


def parse_object_key(key: str) -> tuple[str, str]:
    """Split ``bucket/path/to/object`` into bucket and object key."""
    bucket, separator, object_key = key.partition("/")
    if not separator or not bucket or not object_key:
        raise InvalidKeyError(f"Invalid key format, expected bucket/path: {key}", key=key)
    return bucket, object_key


def _error_code(exc: ClientError) -> str:
    response = getattr(exc, "response", None) or {}
    return str(response.get("Error", {}).get("Code", ""))


def normalize_location(location: Optional[str], bootstrap_region: str) -> str:
    if not location:
        return bootstrap_region
    return LEGACY_LOCATIONS.get(location, location)


def build_client_factory(settings: EdgeCacheSettings) -> ClientFactory:
    """Return a factory producing S3 clients pinned to a given region."""
    session = boto3.session.Session()
    config = BotoConfig(
        connect_timeout=settings.s3_connect_timeout,
        read_timeout=settings.s3_read_timeout,
        retries={"max_attempts": settings.s3_max_attempts, "mode": "standard"},
    )

    def factory(region: str):
        client_args: dict[str, Optional[str]] = {
            "endpoint_url": settings.s3_endpoint_url,
            "region_name": region,
        }
        return session.client("s3", config=config, **{k: v for k, v in client_args.items() if v})

    return factory


class BucketRegionResolver:
    """Resolves and remembers the region of each bucket.

    Location lookups go through a client pinned to the bootstrap region; every
    later call against a bucket uses a client pinned to its own region so S3
    never has to redirect us.
    """

    def __init__(self, client_factory: ClientFactory, bootstrap_region: str = DEFAULT_BOOTSTRAP_REGION) -> None:
        self._client_factory = client_factory
        self._bootstrap_region = bootstrap_region or DEFAULT_BOOTSTRAP_REGION
        self._regions: dict[str, str] = {}
        self._clients: dict[str, Any] = {}
        self._lock = threading.Lock()
        self._lookups = 0

    @property
    def bootstrap_region(self) -> str:
        return self._bootstrap_region

    @property
    def lookups(self) -> int:
        return self._lookups

    def known_regions(self) -> dict[str, str]:
        with self._lock:
            return dict(self._regions)

    def region_for(self, bucket: str) -> str:
        with self._lock:
            region = self._regions.get(bucket)
        if region is not None:
            return region
        region = self._lookup(bucket)
        with self._lock:
            return self._regions.setdefault(bucket, region)

    def client_for(self, bucket: str):
        return self._client(self.region_for(bucket))

    def _client(self, region: str):
        # boto3 sessions are not safe to share across threads while creating clients.
        with self._lock:
            client = self._clients.get(region)
            if client is None:
                client = self._client_factory(region)
                self._clients[region] = client
            return client

    def _lookup(self, bucket: str) -> str:
        client = self._client(self._bootstrap_region)
        with self._lock:
            self._lookups += 1
        try:
            response = client.get_bucket_location(Bucket=bucket)
        except ClientError as exc:
            code = _error_code(exc)
            if code in NOT_FOUND_CODES:
                raise ObjectNotFoundError(f"Bucket {bucket} does not exist") from exc
            raise BackendError(f"Failed to get bucket location for {bucket}: {code or exc}") from exc
        except BotoCoreError as exc:
            raise BackendError(f"Failed to get bucket location for {bucket}: {exc}") from exc
        region = normalize_location(response.get("LocationConstraint"), self._bootstrap_region)
        LOGGER.info("bucket_region_resolved", bucket=bucket, region=region)
        return region


@dataclass(slots=True)
class DownloadResult:
    """Open object stream returned by :class:`S3Downloader`; the caller closes it."""

    body: Any
    size: int

    def iter_chunks(self, chunk_size: int) -> Iterator[bytes]:
        iter_chunks = getattr(self.body, "iter_chunks", None)
        if callable(iter_chunks):
            yield from iter_chunks(chunk_size)
            return
        while True:
            chunk = self.body.read(chunk_size)
            if not chunk:
                return
            yield chunk

    def close(self) -> None:
        close = getattr(self.body, "close", None)
        if callable(close):
            close()


class S3Downloader:
    def __init__(self, resolver: BucketRegionResolver) -> None:
        self._resolver = resolver

    @property
    def resolver(self) -> BucketRegionResolver:
        return self._resolver

    def download(self, key: str) -> DownloadResult:
        bucket, object_key = parse_object_key(key)
        client = self._resolver.client_for(bucket)
        try:
            response = client.get_object(Bucket=bucket, Key=object_key)
        except ClientError as exc:
            code = _error_code(exc)
            if code in NOT_FOUND_CODES:
                raise ObjectNotFoundError(f"Object not found: {key}", key=key) from exc
            raise BackendError(f"Failed to download {key}: {code or exc}", key=key) from exc
        except BotoCoreError as exc:
            raise BackendError(f"Failed to download {key}: {exc}", key=key) from exc
        size = int(response.get("ContentLength") or 0)
        return DownloadResult(body=response["Body"], size=size)
