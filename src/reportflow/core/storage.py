from __future__ import annotations

import hashlib
import os
import time
import uuid
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from reportflow.core.config import settings
from reportflow.core.logging import get_logger, log_event, log_exception, monotonic_ms

logger = get_logger(__name__)

_RETRYABLE_S3_CODES = {
    "RequestTimeout",
    "Throttling",
    "ThrottlingException",
    "SlowDown",
    "InternalError",
    "ServiceUnavailable",
}
_MISSING_S3_CODES = {"NoSuchKey", "404", "NotFound"}
# S3 DeleteObjects accepts at most this many keys per request.
_S3_DELETE_BATCH = 1000


class StorageError(RuntimeError):
    pass


class ObjectNotFound(StorageError):
    pass


@dataclass(frozen=True)
class StoredObject:
    key: str
    byte_size: int
    sha256: str
    content_type: str | None = None


def _stored(key: str, body: bytes, content_type: str | None) -> StoredObject:
    return StoredObject(
        key=key,
        byte_size=len(body),
        sha256=hashlib.sha256(body).hexdigest(),
        content_type=content_type,
    )


class ObjectStorage:
    """Report files and payment proofs, addressed by key."""

    backend = "abstract"

    def put(
        self, *, key: str, body: bytes, content_type: str | None = None
    ) -> StoredObject:  # pragma: no cover
        raise NotImplementedError

    def get(self, *, key: str) -> bytes:  # pragma: no cover
        raise NotImplementedError

    def delete(self, *, key: str) -> None:  # pragma: no cover
        raise NotImplementedError

    def delete_many(self, *, keys: Iterable[str]) -> list[str]:
        """Delete every key; return the keys that could not be deleted."""
        failed: list[str] = []
        for key in keys:
            try:
                self.delete(key=key)
            except (StorageError, OSError, ClientError, BotoCoreError):
                log_exception(
                    logger, "storage.delete.failure", backend=self.backend, storage_key=key
                )
                failed.append(key)
        return failed


class LocalObjectStorage(ObjectStorage):
    backend = "local"

    def __init__(self, root: Path):
        self._root = root
        self._root.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        path = (self._root / key).resolve()
        if self._root.resolve() not in path.parents:
            raise StorageError(f"Invalid storage key: {key}")
        return path

    def put(self, *, key: str, body: bytes, content_type: str | None = None) -> StoredObject:
        start = time.monotonic()
        path = self._path(key)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(body)
        except OSError:
            log_exception(
                logger, "storage.put.failure", backend=self.backend, storage_key=key
            )
            raise
        log_event(
            logger,
            "storage.put.success",
            backend=self.backend,
            storage_key=key,
            byte_size=len(body),
            duration_ms=monotonic_ms(start),
        )
        return _stored(key, body, content_type)

    def get(self, *, key: str) -> bytes:
        path = self._path(key)
        if not path.exists():
            log_event(logger, "storage.get.failure", backend=self.backend, storage_key=key)
            raise ObjectNotFound(f"Object not found: {key}")
        return path.read_bytes()

    def delete(self, *, key: str) -> None:
        self._path(key).unlink(missing_ok=True)


class S3ObjectStorage(ObjectStorage):
    backend = "s3"
    max_put_attempts = 5

    def __init__(self) -> None:
        region = settings.s3_region
        if not region or region.lower() == "auto":
            region = "us-east-1"
        session = boto3.session.Session(
            aws_access_key_id=settings.s3_access_key_id,
            aws_secret_access_key=settings.s3_secret_access_key,
            region_name=region,
        )
        config = Config(
            retries={"max_attempts": 3, "mode": "adaptive"},
            connect_timeout=30,
            read_timeout=60,
        )
        self._client = session.client(
            "s3", endpoint_url=settings.s3_endpoint_url or None, config=config
        )
        self._bucket = settings.s3_bucket

    @staticmethod
    def _retry_delay_s(attempt: int) -> float:
        # 0.25s, 0.5s, 1s, ... capped at 3s
        return min(3.0, 0.25 * (2 ** (attempt - 1)))

    @staticmethod
    def _should_retry(error: Exception) -> bool:
        if isinstance(error, ClientError):
            code = (error.response.get("Error") or {}).get("Code")
            return code in _RETRYABLE_S3_CODES
        return isinstance(error, BotoCoreError)

    def put(self, *, key: str, body: bytes, content_type: str | None = None) -> StoredObject:
        start = time.monotonic()
        extra = {"ContentType": content_type} if content_type else {}
        for attempt in range(1, self.max_put_attempts + 1):
            try:
                self._client.put_object(Bucket=self._bucket, Key=key, Body=body, **extra)
                break
            except (ClientError, BotoCoreError) as e:
                if attempt < self.max_put_attempts and self._should_retry(e):
                    delay_s = self._retry_delay_s(attempt)
                    log_event(
                        logger,
                        "storage.put.retry",
                        backend=self.backend,
                        storage_key=key,
                        attempt=attempt,
                        delay_s=delay_s,
                        error_type=type(e).__name__,
                    )
                    time.sleep(delay_s)
                    continue
                log_exception(
                    logger,
                    "storage.put.failure",
                    backend=self.backend,
                    storage_key=key,
                    attempt=attempt,
                )
                raise
        log_event(
            logger,
            "storage.put.success",
            backend=self.backend,
            storage_key=key,
            byte_size=len(body),
            duration_ms=monotonic_ms(start),
        )
        return _stored(key, body, content_type)

    def get(self, *, key: str) -> bytes:
        try:
            resp = self._client.get_object(Bucket=self._bucket, Key=key)
        except ClientError as e:
            log_exception(logger, "storage.get.failure", backend=self.backend, storage_key=key)
            code = (e.response.get("Error") or {}).get("Code")
            if code in _MISSING_S3_CODES:
                raise ObjectNotFound(f"Object not found: {key}") from e
            raise StorageError(f"Could not read {key}: {code}") from e
        except BotoCoreError as e:
            log_exception(logger, "storage.get.failure", backend=self.backend, storage_key=key)
            raise StorageError(f"Could not read {key}") from e
        return resp["Body"].read()

    def delete(self, *, key: str) -> None:
        self._client.delete_object(Bucket=self._bucket, Key=key)

    def delete_many(self, *, keys: Iterable[str]) -> list[str]:
        keys = list(keys)
        failed: list[str] = []
        for i in range(0, len(keys), _S3_DELETE_BATCH):
            batch = keys[i : i + _S3_DELETE_BATCH]
            try:
                resp = self._client.delete_objects(
                    Bucket=self._bucket,
                    Delete={"Objects": [{"Key": k} for k in batch], "Quiet": True},
                )
            except (ClientError, BotoCoreError):
                log_exception(
                    logger, "storage.delete.failure", backend=self.backend, batch_size=len(batch)
                )
                failed.extend(batch)
                continue
            for error in resp.get("Errors") or []:
                log_event(
                    logger,
                    "storage.delete.failure",
                    backend=self.backend,
                    storage_key=error.get("Key"),
                    error_code=error.get("Code"),
                )
                failed.append(error.get("Key"))
        return failed

    def head_bucket(self) -> None:
        self._client.head_bucket(Bucket=self._bucket)


_storage: ObjectStorage | None = None


def get_storage() -> ObjectStorage:
    global _storage  # noqa: PLW0603
    if _storage is not None:
        return _storage

    if settings.storage_backend == "s3":
        _storage = S3ObjectStorage()
    else:
        _storage = LocalObjectStorage(_local_root())
    return _storage


def _local_root() -> Path:
    root = settings.local_storage_path
    if not root.is_absolute():
        root = Path(os.getcwd()) / root
    return root


def diagnose_storage(*, write_test: bool = False) -> dict[str, Any]:
    """
    Connectivity check for the configured backend. Never returns credentials.

    With ``write_test`` a small object is written, read back and deleted.
    """
    result: dict[str, Any] = {"ok": True, "backend": settings.storage_backend}
    start = time.monotonic()
    try:
        storage = get_storage()
        if isinstance(storage, S3ObjectStorage):
            storage.head_bucket()
        if write_test:
            key = f"diagnostics/healthz-{uuid.uuid4()}.txt"
            storage.put(key=key, body=b"ok", content_type="text/plain")
            round_trip = storage.get(key=key)
            storage.delete(key=key)
            result["write_test"] = {"ok": round_trip == b"ok", "key": key}
            result["ok"] = round_trip == b"ok"
    except (StorageError, OSError, ClientError, BotoCoreError) as e:
        result["ok"] = False
        result["error_type"] = type(e).__name__
        result["error"] = str(e)
    result["duration_ms"] = monotonic_ms(start)
    return result
