"""Object storage backends: local filesystem and S3-compatible buckets.

Only the operations the pipeline needs are exposed: existence checks,
downloading a source object to a local path and uploading a produced file.
"""

import json
import mimetypes
import shutil
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, Optional

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import ClientError

from .config import StorageConfig


class StorageError(Exception):
    """Raised when an object cannot be read or written."""


def guess_kind(key: str) -> str:
    """Return 'image' | 'video' | 'audio' | 'other' based on mimetype/extension."""
    mime, _ = mimetypes.guess_type(key)
    if not mime:
        return "other"
    for kind in ("image", "video", "audio"):
        if mime.startswith(f"{kind}/"):
            return kind
    return "other"


class ObjectStorage(ABC):
    """Abstract object storage interface."""

    @abstractmethod
    def exists(self, key: str) -> bool:
        """Whether an object is stored under ``key``."""

    @abstractmethod
    def download_to(self, key: str, dest: Path) -> Path:
        """Copy object ``key`` to local file ``dest``.

        Raises:
            StorageError: If the object is missing or cannot be read
        """

    @abstractmethod
    def upload_file(
        self,
        local_path: Path,
        key: str,
        content_type: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        access: str = "private",
    ) -> Dict[str, Any]:
        """Store ``local_path`` under ``key``.

        Returns:
            Access descriptor: {"url", "signed_url", "access"}
        """


class LocalStorage(ObjectStorage):
    """Objects as files below a root directory.

    Metadata is written to a ``<key>.meta.json`` sidecar.
    """

    def __init__(self, root: str, public_base_url: Optional[str] = None):
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)
        self.public_base_url = public_base_url.rstrip("/") if public_base_url else None

    def _path(self, key: str) -> Path:
        path = (self.root / key.lstrip("/")).resolve()
        if path != self.root and self.root not in path.parents:
            raise StorageError(f"Key escapes storage root: {key}")
        return path

    def exists(self, key: str) -> bool:
        try:
            return self._path(key).is_file()
        except StorageError:
            return False

    def download_to(self, key: str, dest: Path) -> Path:
        src = self._path(key)
        if not src.is_file():
            raise StorageError(f"Object not found: {key}")
        dest = Path(dest)
        dest.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(src, dest)
        return dest

    def upload_file(
        self,
        local_path: Path,
        key: str,
        content_type: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        access: str = "private",
    ) -> Dict[str, Any]:
        dest = self._path(key)
        dest.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(local_path, dest)

        if metadata or content_type:
            sidecar = dest.with_name(dest.name + ".meta.json")
            with open(sidecar, "w", encoding="utf-8") as f:
                json.dump({"content_type": content_type, "metadata": metadata or {}}, f)

        url = f"{self.public_base_url}/{key}" if self.public_base_url else None
        return {
            "url": url if access == "public" else None,
            "signed_url": None,
            "access": access,
        }


class S3Storage(ObjectStorage):
    """S3/MinIO bucket backend using boto3."""

    def __init__(self, config: StorageConfig, client=None, presign_client=None):
        self.config = config
        self.bucket = config.s3_bucket
        self._client = client or self._make_client(config.s3_endpoint_url)
        self._presign_client = presign_client or self._make_client(
            config.s3_public_endpoint or config.s3_endpoint_url
        )

    def _make_client(self, endpoint_url: Optional[str]):
        session = boto3.session.Session(
            aws_access_key_id=self.config.s3_access_key,
            aws_secret_access_key=self.config.s3_secret_key,
            region_name=self.config.s3_region,
        )
        return session.client(
            "s3",
            endpoint_url=endpoint_url,
            config=BotoConfig(s3={"addressing_style": "path"}, signature_version="s3v4"),
        )

    def exists(self, key: str) -> bool:
        try:
            self._client.head_object(Bucket=self.bucket, Key=key)
            return True
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in ("404", "NoSuchKey", "NotFound"):
                return False
            raise StorageError(f"Cannot stat {key}: {e}") from e

    def download_to(self, key: str, dest: Path) -> Path:
        dest = Path(dest)
        dest.parent.mkdir(parents=True, exist_ok=True)
        try:
            self._client.download_file(self.bucket, key, str(dest))
        except ClientError as e:
            raise StorageError(f"Cannot download {key}: {e}") from e
        return dest

    def upload_file(
        self,
        local_path: Path,
        key: str,
        content_type: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        access: str = "private",
    ) -> Dict[str, Any]:
        extra: Dict[str, Any] = {}
        if content_type:
            extra["ContentType"] = content_type
        if metadata:
            # S3 user metadata values must be strings
            extra["Metadata"] = {k: str(v) for k, v in metadata.items() if v is not None}
        if access == "public":
            extra["ACL"] = "public-read"

        try:
            self._client.upload_file(str(local_path), self.bucket, key, ExtraArgs=extra or None)
        except ClientError as e:
            raise StorageError(f"Cannot upload {key}: {e}") from e

        signed_url = self._presign_client.generate_presigned_url(
            ClientMethod="get_object",
            Params={"Bucket": self.bucket, "Key": key},
            ExpiresIn=self.config.presign_expire_s,
            HttpMethod="GET",
        )
        base = self.config.s3_public_endpoint or self.config.s3_endpoint_url
        url = f"{base}/{self.bucket}/{key}" if base and access == "public" else None
        return {"url": url, "signed_url": signed_url, "access": access}


def build_storage(config: StorageConfig) -> ObjectStorage:
    if config.backend == "s3":
        return S3Storage(config)
    return LocalStorage(config.local_root, config.public_base_url)
