import io
from uuid import uuid4

import pytest
from botocore.exceptions import ClientError

from signflow.core.errors import StorageFailure
from signflow.services.storage import (
    ArtifactExistsError,
    ArtifactNotFoundError,
    LocalStorage,
    S3Storage,
    build_org_scoped_path,
    ensure_org_scoped_path,
)


def test_build_org_scoped_path_joins_and_strips() -> None:
    org_id = str(uuid4())
    path = build_org_scoped_path(org_id, "projects", "/p1/", "esign", "doc", "executed", "file.pdf")

    assert path == f"{org_id}/projects/p1/esign/doc/executed/file.pdf"


def test_ensure_org_scoped_path_prefixes_once() -> None:
    org_id = str(uuid4())

    assert ensure_org_scoped_path(org_id, "a/b.pdf") == f"{org_id}/a/b.pdf"
    assert ensure_org_scoped_path(org_id, f"/{org_id}/a/b.pdf") == f"{org_id}/a/b.pdf"


@pytest.mark.parametrize("path", ["../secrets.pdf", "a/../../b.pdf"])
def test_parent_segments_rejected(path) -> None:
    with pytest.raises(StorageFailure, match="Invalid storage path"):
        ensure_org_scoped_path(str(uuid4()), path)


def test_build_path_requires_org() -> None:
    with pytest.raises(StorageFailure):
        build_org_scoped_path("", "a.pdf")


def test_local_storage_refuses_overwrite_unless_upsert(tmp_path) -> None:
    storage = LocalStorage(base_dir=tmp_path)
    org_id = str(uuid4())

    stored_path = storage.upload_artifact(org_id, "docs/a.pdf", b"one", "application/pdf")
    assert stored_path == f"{org_id}/docs/a.pdf"
    assert (tmp_path / stored_path).read_bytes() == b"one"

    with pytest.raises(ArtifactExistsError):
        storage.upload_artifact(org_id, "docs/a.pdf", b"two", "application/pdf")
    assert storage.download_artifact(org_id, "docs/a.pdf") == b"one"

    storage.upload_artifact(org_id, "docs/a.pdf", b"two", "application/pdf", upsert=True)
    assert storage.download_artifact(org_id, stored_path) == b"two"
    assert storage.durable is False


def test_local_storage_keeps_orgs_apart(tmp_path) -> None:
    storage = LocalStorage(base_dir=tmp_path)
    org_a, org_b = str(uuid4()), str(uuid4())
    storage.upload_artifact(org_a, "shared.pdf", b"a", "application/pdf")

    with pytest.raises(ArtifactNotFoundError):
        storage.download_artifact(org_b, "shared.pdf")


class FakeS3Client:
    def __init__(self):
        self.objects: dict[str, bytes] = {}

    def head_object(self, Bucket, Key):
        if Key not in self.objects:
            raise ClientError({"Error": {"Code": "404"}}, "HeadObject")
        return {}

    def put_object(self, Bucket, Key, Body, ContentType):
        self.objects[Key] = Body

    def get_object(self, Bucket, Key):
        if Key not in self.objects:
            raise ClientError({"Error": {"Code": "NoSuchKey"}}, "GetObject")
        return {"Body": io.BytesIO(self.objects[Key])}


def test_s3_storage_prefixes_keys_and_refuses_overwrite() -> None:
    client = FakeS3Client()
    storage = S3Storage(bucket="files", client=client, prefix="project-files")
    org_id = str(uuid4())

    storage.upload_artifact(org_id, "a.pdf", b"pdf", "application/pdf")

    assert list(client.objects) == [f"project-files/{org_id}/a.pdf"]
    assert storage.download_artifact(org_id, "a.pdf") == b"pdf"
    assert storage.durable is True
    with pytest.raises(ArtifactExistsError):
        storage.upload_artifact(org_id, "a.pdf", b"other", "application/pdf")
    with pytest.raises(ArtifactNotFoundError):
        storage.download_artifact(org_id, "missing.pdf")
