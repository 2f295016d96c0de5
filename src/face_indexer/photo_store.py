"""S3-compatible photo store access (MinIO in production)."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol

import boto3
from botocore.config import Config as BotoConfig

from face_indexer.config import StorageConfig
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "photo_store"})


@dataclass(frozen=True)
class StoredObject:
    """A listed object: full key and size in bytes."""

    key: str
    size_bytes: int


@dataclass(frozen=True)
class FetchedObject:
    """Raw object bytes plus the size reported by the store."""

    data: bytes
    size_bytes: int


class PhotoStore(Protocol):
    """Hierarchical object listing and retrieval used by the pipeline."""

    def list_prefixes(self, prefix: str) -> list[str]:
        """Return the immediate child prefixes of ``prefix`` (each ending in ``/``)."""

    def list_objects(self, prefix: str) -> list[StoredObject]:
        """Return every object under ``prefix``, recursively."""

    def get_object(self, key: str) -> FetchedObject:
        """Return the full body of ``key``."""


class S3PhotoStore:
    """:class:`PhotoStore` backed by a boto3 S3 client."""

    def __init__(self, client: Any, bucket: str) -> None:
        self._client = client
        self._bucket = bucket

    @classmethod
    def from_config(cls, config: StorageConfig) -> "S3PhotoStore":
        boto_config = BotoConfig(
            signature_version="s3v4",
            connect_timeout=config.connect_timeout_seconds,
            read_timeout=config.read_timeout_seconds,
            # The pipeline's retry combinator owns retries.
            retries={"total_max_attempts": 1, "mode": "standard"},
            max_pool_connections=config.max_pool_connections,
            s3={"addressing_style": "path"},
        )
        client = boto3.client(
            "s3",
            endpoint_url=config.endpoint_url,
            region_name=config.region,
            aws_access_key_id=config.access_key_id,
            aws_secret_access_key=config.secret_access_key,
            config=boto_config,
        )
        return cls(client, config.bucket)

    @property
    def bucket(self) -> str:
        return self._bucket

    def list_prefixes(self, prefix: str) -> list[str]:
        paginator = self._client.get_paginator("list_objects_v2")
        prefixes: list[str] = []
        for page in paginator.paginate(Bucket=self._bucket, Prefix=prefix, Delimiter="/"):
            for entry in page.get("CommonPrefixes") or []:
                value = entry.get("Prefix")
                if value:
                    prefixes.append(value)
        return prefixes

    def list_objects(self, prefix: str) -> list[StoredObject]:
        paginator = self._client.get_paginator("list_objects_v2")
        objects: list[StoredObject] = []
        for page in paginator.paginate(Bucket=self._bucket, Prefix=prefix):
            for entry in page.get("Contents") or []:
                objects.append(StoredObject(key=entry["Key"], size_bytes=int(entry.get("Size") or 0)))
        return objects

    def get_object(self, key: str) -> FetchedObject:
        response = self._client.get_object(Bucket=self._bucket, Key=key)
        body = response["Body"]
        try:
            data = body.read()
        finally:
            body.close()
        size = response.get("ContentLength")
        return FetchedObject(data=data, size_bytes=int(size) if size is not None else len(data))


__all__ = ["FetchedObject", "PhotoStore", "S3PhotoStore", "StoredObject"]
