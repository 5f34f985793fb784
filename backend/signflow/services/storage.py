from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

import boto3
from botocore.client import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from signflow.core.config import Settings, settings
from signflow.core.errors import MisconfiguredError, StorageFailure

logger = logging.getLogger("signflow.storage")


class ArtifactNotFoundError(StorageFailure):
    status_code = 404
    retryable = False
    default_message = "Stored artifact not found"


class ArtifactExistsError(StorageFailure):
    status_code = 409
    retryable = False
    default_message = "Stored artifact already exists"


def _normalize_path(path: str) -> str:
    return path[1:] if path.startswith("/") else path


def _assert_safe_path(path: str) -> None:
    if any(part == ".." for part in _normalize_path(path).split("/")):
        raise StorageFailure("Invalid storage path")


def _join_path(parts: list[str]) -> str:
    cleaned = [str(part).strip().strip("/") for part in parts]
    joined = "/".join(part for part in cleaned if part)
    _assert_safe_path(joined)
    return joined


def ensure_org_scoped_path(org_id: str, path: str) -> str:
    org = str(org_id)
    normalized = _normalize_path(path)
    _assert_safe_path(normalized)
    if normalized == org or normalized.startswith(f"{org}/"):
        return normalized
    return _join_path([org, normalized])


def build_org_scoped_path(org_id: str, *parts: Any) -> str:
    if not org_id:
        raise StorageFailure("Missing org id for storage path")
    return _join_path([str(org_id), *[str(part) for part in parts]])


class StorageBackend(Protocol):
    durable: bool

    def download_artifact(self, org_id: str, path: str) -> bytes:
        ...

    def upload_artifact(
        self,
        org_id: str,
        path: str,
        data: bytes,
        content_type: str,
        upsert: bool = False,
    ) -> str:  # returns the org-scoped storage path
        ...


@dataclass
class LocalStorage:
    base_dir: Path
    durable: bool = False

    def __post_init__(self) -> None:
        self.base_dir = Path(self.base_dir).expanduser().resolve()
        self.base_dir.mkdir(parents=True, exist_ok=True)

    def _resolve(self, org_id: str, path: str) -> tuple[str, Path]:
        storage_path = ensure_org_scoped_path(str(org_id), path)
        return storage_path, self.base_dir / storage_path

    def upload_artifact(
        self,
        org_id: str,
        path: str,
        data: bytes,
        content_type: str,  # noqa: ARG002
        upsert: bool = False,
    ) -> str:
        storage_path, target = self._resolve(org_id, path)
        if target.exists() and not upsert:
            raise ArtifactExistsError(f"storage upload failed ({storage_path}): object already exists")
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)
        except OSError as exc:
            raise StorageFailure(f"storage upload failed ({storage_path}): {exc}") from exc
        return storage_path

    def download_artifact(self, org_id: str, path: str) -> bytes:
        storage_path, target = self._resolve(org_id, path)
        if not target.exists():
            raise ArtifactNotFoundError(f"Artifact {storage_path!r} was not found in storage.")
        try:
            return target.read_bytes()
        except OSError as exc:
            raise StorageFailure(f"storage download failed ({storage_path}): {exc}") from exc


@dataclass
class S3Storage:
    bucket: str
    client: Any
    prefix: str = ""
    durable: bool = field(default=True)

    def _key(self, storage_path: str) -> str:
        prefix = self.prefix.strip("/")
        return f"{prefix}/{storage_path}" if prefix else storage_path

    def _exists(self, key: str) -> bool:
        try:
            self.client.head_object(Bucket=self.bucket, Key=key)
        except ClientError as exc:
            code = str(exc.response.get("Error", {}).get("Code", ""))
            if code in {"404", "NoSuchKey", "NotFound"}:
                return False
            raise
        return True

    def upload_artifact(
        self,
        org_id: str,
        path: str,
        data: bytes,
        content_type: str,
        upsert: bool = False,
    ) -> str:
        storage_path = ensure_org_scoped_path(str(org_id), path)
        key = self._key(storage_path)
        try:
            if not upsert and self._exists(key):
                raise ArtifactExistsError(f"storage upload failed ({storage_path}): object already exists")
            self.client.put_object(Bucket=self.bucket, Key=key, Body=data, ContentType=content_type)
        except (BotoCoreError, ClientError) as exc:
            raise StorageFailure(f"storage upload failed ({storage_path}): {exc}") from exc
        return storage_path

    def download_artifact(self, org_id: str, path: str) -> bytes:
        storage_path = ensure_org_scoped_path(str(org_id), path)
        try:
            response = self.client.get_object(Bucket=self.bucket, Key=self._key(storage_path))
        except ClientError as exc:
            code = str(exc.response.get("Error", {}).get("Code", ""))
            if code in {"404", "NoSuchKey", "NotFound"}:
                raise ArtifactNotFoundError(f"Artifact {storage_path!r} was not found in storage.") from exc
            raise StorageFailure(f"storage download failed ({storage_path}): {exc}") from exc
        except BotoCoreError as exc:
            raise StorageFailure(f"storage download failed ({storage_path}): {exc}") from exc
        body = response.get("Body")
        return body.read() if body else b""


def get_storage(source: Settings | None = None) -> StorageBackend:
    source = source or settings
    provider = (source.files_storage or "s3").strip().lower()

    if provider == "s3":
        if not (source.s3_endpoint_url and source.s3_access_key and source.s3_secret_key):
            raise MisconfiguredError("Missing S3 credentials or endpoint")
        client = boto3.client(
            "s3",
            endpoint_url=source.s3_endpoint_url,
            aws_access_key_id=source.s3_access_key,
            aws_secret_access_key=source.s3_secret_key,
            config=BotoConfig(signature_version="s3v4"),
            region_name=source.s3_region or os.getenv("AWS_REGION", "us-east-1"),
        )
        return S3Storage(bucket=source.s3_bucket_files, client=client, prefix=source.s3_files_prefix)

    base = os.getenv("SIGNFLOW_STORAGE") or source.storage_base_path or "storage"
    logger.info("Using local file storage at %s", base)
    return LocalStorage(base_dir=Path(base))
