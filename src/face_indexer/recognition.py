"""AWS Rekognition face collection access."""

from __future__ import annotations

from typing import Any, Protocol

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from face_indexer.config import RecognitionConfig
from face_indexer.errors import RecognitionUnavailable
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "recognition"})


def _error_code(exc: ClientError) -> str:
    return str(exc.response.get("Error", {}).get("Code") or "")


class FaceIndex(Protocol):
    """The subset of the recognition service used for indexing."""

    def ensure_collection(self, collection_id: str) -> None:
        """Create the collection unless it already exists."""

    def index_face(self, collection_id: str, image_bytes: bytes, external_id: str) -> str | None:
        """Register the faces in ``image_bytes`` under ``external_id``; return the first face id."""

    def list_external_ids(self, collection_id: str) -> set[str]:
        """Return every external id registered in the collection."""


class RekognitionIndex:
    """:class:`FaceIndex` backed by a boto3 Rekognition client."""

    def __init__(self, client: Any, list_page_size: int = 4096) -> None:
        self._client = client
        self._list_page_size = list_page_size

    @classmethod
    def from_config(cls, config: RecognitionConfig) -> "RekognitionIndex":
        boto_config = BotoConfig(
            connect_timeout=config.connect_timeout_seconds,
            read_timeout=config.read_timeout_seconds,
            retries={"total_max_attempts": 1, "mode": "standard"},
            max_pool_connections=config.max_pool_connections,
        )
        client = boto3.client(
            "rekognition",
            region_name=config.region,
            aws_access_key_id=config.access_key_id,
            aws_secret_access_key=config.secret_access_key,
            config=boto_config,
        )
        return cls(client, list_page_size=config.list_page_size)

    def ensure_collection(self, collection_id: str) -> None:
        try:
            self._client.create_collection(CollectionId=collection_id)
            LOGGER.info("collection_created", extra={"collection_id": collection_id})
        except ClientError as exc:
            if _error_code(exc) == "ResourceAlreadyExistsException":
                return
            raise RecognitionUnavailable(f"cannot create collection {collection_id!r}: {exc}") from exc
        except BotoCoreError as exc:
            raise RecognitionUnavailable(f"cannot create collection {collection_id!r}: {exc}") from exc

    def delete_collection(self, collection_id: str) -> bool:
        """Delete a collection; return ``False`` when it did not exist."""

        try:
            self._client.delete_collection(CollectionId=collection_id)
        except ClientError as exc:
            if _error_code(exc) == "ResourceNotFoundException":
                return False
            raise
        LOGGER.info("collection_deleted", extra={"collection_id": collection_id})
        return True

    def index_face(self, collection_id: str, image_bytes: bytes, external_id: str) -> str | None:
        response = self._client.index_faces(
            CollectionId=collection_id,
            Image={"Bytes": image_bytes},
            ExternalImageId=external_id,
            DetectionAttributes=[],
        )
        records = response.get("FaceRecords") or []
        if not records:
            # Photos without a detectable face still count as indexed.
            LOGGER.debug("index_face_no_faces", extra={"collection_id": collection_id, "external_id": external_id})
            return None
        return records[0].get("Face", {}).get("FaceId")

    def list_external_ids(self, collection_id: str) -> set[str]:
        external_ids: set[str] = set()
        params: dict[str, Any] = {"CollectionId": collection_id, "MaxResults": self._list_page_size}
        try:
            while True:
                response = self._client.list_faces(**params)
                for face in response.get("Faces") or []:
                    external_id = face.get("ExternalImageId")
                    if external_id:
                        external_ids.add(external_id)
                next_token = response.get("NextToken")
                if not next_token:
                    break
                params["NextToken"] = next_token
        except ClientError as exc:
            if _error_code(exc) == "ResourceNotFoundException":
                return set()
            raise RecognitionUnavailable(f"cannot list faces in {collection_id!r}: {exc}") from exc
        except BotoCoreError as exc:
            raise RecognitionUnavailable(f"cannot list faces in {collection_id!r}: {exc}") from exc
        return external_ids


__all__ = ["FaceIndex", "RekognitionIndex"]
