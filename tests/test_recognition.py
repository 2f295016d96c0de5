"""Tests for the Rekognition-backed face index using botocore stubs."""

from __future__ import annotations

import boto3
import pytest
from botocore.stub import Stubber

from face_indexer.errors import RecognitionUnavailable
from face_indexer.recognition import RekognitionIndex


@pytest.fixture()
def client():
    return boto3.client(
        "rekognition",
        region_name="us-east-1",
        aws_access_key_id="testing",
        aws_secret_access_key="testing",
    )


def test_ensure_collection_tolerates_existing_collection(client) -> None:
    with Stubber(client) as stub:
        stub.add_client_error("create_collection", service_error_code="ResourceAlreadyExistsException")
        RekognitionIndex(client).ensure_collection("run")
        stub.assert_no_pending_responses()


def test_ensure_collection_raises_on_other_errors(client) -> None:
    with Stubber(client) as stub:
        stub.add_client_error("create_collection", service_error_code="AccessDeniedException", http_status_code=403)
        with pytest.raises(RecognitionUnavailable):
            RekognitionIndex(client).ensure_collection("run")


def test_list_external_ids_follows_pagination(client) -> None:
    with Stubber(client) as stub:
        stub.add_response(
            "list_faces",
            {
                "Faces": [{"FaceId": "f1", "ExternalImageId": "a.jpg"}, {"FaceId": "f2", "ExternalImageId": "a.jpg"}],
                "NextToken": "page-2",
            },
            {"CollectionId": "run", "MaxResults": 2},
        )
        stub.add_response(
            "list_faces",
            {"Faces": [{"FaceId": "f3", "ExternalImageId": "b.jpg"}, {"FaceId": "f4"}]},
            {"CollectionId": "run", "MaxResults": 2, "NextToken": "page-2"},
        )

        ids = RekognitionIndex(client, list_page_size=2).list_external_ids("run")
        stub.assert_no_pending_responses()

    assert ids == {"a.jpg", "b.jpg"}


def test_list_external_ids_of_missing_collection_is_empty(client) -> None:
    with Stubber(client) as stub:
        stub.add_client_error("list_faces", service_error_code="ResourceNotFoundException")

        assert RekognitionIndex(client).list_external_ids("run") == set()


def test_list_external_ids_raises_on_service_failure(client) -> None:
    with Stubber(client) as stub:
        stub.add_client_error("list_faces", service_error_code="InternalServerError", http_status_code=500)

        with pytest.raises(RecognitionUnavailable):
            RekognitionIndex(client).list_external_ids("run")


def test_index_face_returns_first_face_id(client) -> None:
    expected = {
        "CollectionId": "run",
        "Image": {"Bytes": b"jpeg"},
        "ExternalImageId": "a.jpg",
        "DetectionAttributes": [],
    }
    with Stubber(client) as stub:
        stub.add_response("index_faces", {"FaceRecords": [{"Face": {"FaceId": "face-1"}}]}, expected)
        stub.add_response("index_faces", {"FaceRecords": []}, expected)

        index = RekognitionIndex(client)
        assert index.index_face("run", b"jpeg", "a.jpg") == "face-1"
        assert index.index_face("run", b"jpeg", "a.jpg") is None


def test_delete_collection_reports_missing_collection(client) -> None:
    with Stubber(client) as stub:
        stub.add_response("delete_collection", {"StatusCode": 200}, {"CollectionId": "run"})
        stub.add_client_error("delete_collection", service_error_code="ResourceNotFoundException")

        index = RekognitionIndex(client)
        assert index.delete_collection("run") is True
        assert index.delete_collection("run") is False
