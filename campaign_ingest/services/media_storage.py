from __future__ import annotations

import concurrent.futures
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Iterator, Optional
from urllib.parse import quote

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from campaign_ingest.config import settings

logger = logging.getLogger(__name__)

MULTIPART_PART_SIZE = 5 * 1024 * 1024
MULTIPART_MAX_CONCURRENCY = 4

_UNAVAILABLE_ERROR_CODES = {
    "AccessDenied",
    "InvalidAccessKeyId",
    "SignatureDoesNotMatch",
    "ExpiredToken",
    "InvalidToken",
    "RequestTimeout",
    "SlowDown",
    "ServiceUnavailable",
    "InternalError",
    "NoSuchBucket",
}
_UNAVAILABLE_HTTP_STATUSES = {401, 403, 408, 429}


class MediaStorageError(RuntimeError):
    def __init__(self, message: str, *, key: Optional[str] = None, code: Optional[str] = None) -> None:
        super().__init__(message)
        self.key = key
        self.code = code


class MediaStorageConfigurationError(MediaStorageError):
    pass


class StoreUnavailable(MediaStorageError):
    """Transport, credential or server-side failure talking to the store."""


class StoreRejected(MediaStorageError):
    """The store (or the local size guard) refused the payload itself."""


class MultipartUploadFailed(MediaStorageError):
    def __init__(
        self,
        message: str,
        *,
        key: Optional[str] = None,
        code: Optional[str] = None,
        upload_id: Optional[str] = None,
    ) -> None:
        super().__init__(message, key=key, code=code)
        self.upload_id = upload_id


class MultipartUploadTimeout(MultipartUploadFailed):
    pass


@dataclass(frozen=True)
class UploadedAsset:
    url: str
    key: str
    bucket: str
    etag: Optional[str] = None


@dataclass(frozen=True)
class UploadProgress:
    loaded: int
    total: int
    percentage: float


ProgressCallback = Callable[[UploadProgress], None]


def _part_ranges(total: int, part_size: int = MULTIPART_PART_SIZE) -> Iterator[tuple[int, int, int]]:
    if total == 0:
        yield 1, 0, 0
        return
    part_number = 1
    for start in range(0, total, part_size):
        yield part_number, start, min(start + part_size, total)
        part_number += 1


class MediaStorage:
    """
    Thin wrapper around S3 (or an S3-compatible store) for campaign asset uploads.

    NOTE: This intentionally omits any delete helpers; the bucket is append-only from
    this service. Only in-progress multipart sessions are ever aborted.
    """

    def __init__(
        self,
        *,
        client: Any = None,
        bucket: Optional[str] = None,
        region: Optional[str] = None,
        public_base_url: Optional[str] = None,
        max_object_bytes: Optional[int] = None,
        multipart_timeout_seconds: Optional[float] = None,
    ) -> None:
        self.bucket = bucket or settings.MEDIA_STORAGE_BUCKET
        if not self.bucket:
            raise MediaStorageConfigurationError("MEDIA_STORAGE_BUCKET is required")
        self.region = region or settings.MEDIA_STORAGE_REGION or "us-east-1"
        self.endpoint = settings.MEDIA_STORAGE_ENDPOINT
        self.force_path_style = bool(settings.MEDIA_STORAGE_FORCE_PATH_STYLE)
        self.public_base_url = (public_base_url or settings.MEDIA_STORAGE_PUBLIC_BASE_URL or "").rstrip("/")
        self.max_object_bytes = int(max_object_bytes or settings.MEDIA_STORAGE_MAX_OBJECT_BYTES)
        self.multipart_timeout_seconds = float(
            multipart_timeout_seconds or settings.MEDIA_STORAGE_MULTIPART_TIMEOUT_SECONDS
        )
        self.client = client if client is not None else self._build_client()

    def _build_client(self):
        if bool(settings.MEDIA_STORAGE_ACCESS_KEY) != bool(settings.MEDIA_STORAGE_SECRET_KEY):
            raise MediaStorageConfigurationError(
                "MEDIA_STORAGE_ACCESS_KEY and MEDIA_STORAGE_SECRET_KEY must be set together"
            )
        addressing_style = "path" if self.force_path_style else "auto"
        timeout = float(settings.MEDIA_STORAGE_REQUEST_TIMEOUT_SECONDS)
        session = boto3.session.Session()
        # Without explicit keys boto3 falls back to its default credential chain.
        return session.client(
            "s3",
            endpoint_url=self.endpoint or None,
            aws_access_key_id=settings.MEDIA_STORAGE_ACCESS_KEY or None,
            aws_secret_access_key=settings.MEDIA_STORAGE_SECRET_KEY or None,
            region_name=self.region,
            config=Config(
                s3={"addressing_style": addressing_style},
                signature_version="s3v4",
                retries={"max_attempts": int(settings.MEDIA_STORAGE_MAX_ATTEMPTS), "mode": "standard"},
                connect_timeout=timeout,
                read_timeout=timeout,
                max_pool_connections=max(10, MULTIPART_MAX_CONCURRENCY * 4),
            ),
        )

    def build_public_url(self, key: str) -> str:
        quoted_key = quote(key, safe="/")
        if self.public_base_url:
            return f"{self.public_base_url}/{quoted_key}"
        if self.endpoint:
            endpoint = self.endpoint.rstrip("/")
            if self.force_path_style:
                return f"{endpoint}/{self.bucket}/{quoted_key}"
            scheme, _, host = endpoint.partition("://")
            return f"{scheme}://{self.bucket}.{host}/{quoted_key}"
        return f"https://{self.bucket}.s3.{self.region}.amazonaws.com/{quoted_key}"

    def put_object(
        self,
        *,
        data: bytes,
        key: str,
        content_type: str,
        metadata: Optional[dict[str, str]] = None,
    ) -> UploadedAsset:
        self._check_size(len(data), key)
        kwargs: dict[str, Any] = {
            "Bucket": self.bucket,
            "Key": key,
            "Body": data,
            "ContentType": content_type,
        }
        if metadata:
            kwargs["Metadata"] = metadata
        try:
            response = self.client.put_object(**kwargs)
        except (ClientError, BotoCoreError) as exc:
            raise self._translate_error(exc, key=key, operation="put_object") from exc
        return UploadedAsset(
            url=self.build_public_url(key),
            key=key,
            bucket=self.bucket,
            etag=response.get("ETag"),
        )

    def put_object_multipart(
        self,
        *,
        data: bytes,
        key: str,
        content_type: str,
        metadata: Optional[dict[str, str]] = None,
        on_progress: Optional[ProgressCallback] = None,
        timeout: Optional[float] = None,
    ) -> UploadedAsset:
        """
        Upload ``data`` as 5 MiB parts with at most four parts in flight.

        ``on_progress`` receives the cumulative byte count after every completed part.
        A part failure or a failed completion waits for the parts still uploading, then
        aborts the session so the store keeps no partial object, and raises
        MultipartUploadFailed. Past the deadline it aborts at once and raises
        MultipartUploadTimeout; see _abort_multipart.
        """
        total = len(data)
        self._check_size(total, key)
        create_kwargs: dict[str, Any] = {"Bucket": self.bucket, "Key": key, "ContentType": content_type}
        if metadata:
            create_kwargs["Metadata"] = metadata
        try:
            created = self.client.create_multipart_upload(**create_kwargs)
        except (ClientError, BotoCoreError) as exc:
            raise self._translate_error(exc, key=key, operation="create_multipart_upload") from exc
        upload_id = created["UploadId"]

        deadline = time.monotonic() + float(timeout or self.multipart_timeout_seconds)
        view = memoryview(data)
        completed_parts: list[dict[str, Any]] = []
        loaded = 0
        futures: dict[concurrent.futures.Future, tuple[int, int]] = {}
        executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=MULTIPART_MAX_CONCURRENCY,
            thread_name_prefix="multipart-part",
        )
        try:
            for part_number, start, end in _part_ranges(total):
                future = executor.submit(self._upload_part, key, upload_id, part_number, view[start:end])
                futures[future] = (part_number, end - start)

            pending = set(futures)
            while pending:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise MultipartUploadTimeout(
                        f"Multipart upload timed out for {key}",
                        key=key,
                        upload_id=upload_id,
                    )
                done, pending = concurrent.futures.wait(
                    pending,
                    timeout=remaining,
                    return_when=concurrent.futures.FIRST_COMPLETED,
                )
                for future in done:
                    part_number, size = futures[future]
                    etag = future.result()
                    completed_parts.append({"PartNumber": part_number, "ETag": etag})
                    loaded += size
                    if on_progress:
                        percentage = (loaded / total) * 100 if total else 100.0
                        on_progress(UploadProgress(loaded=loaded, total=total, percentage=percentage))

            result = self.client.complete_multipart_upload(
                Bucket=self.bucket,
                Key=key,
                UploadId=upload_id,
                MultipartUpload={"Parts": sorted(completed_parts, key=lambda part: part["PartNumber"])},
            )
        except MultipartUploadTimeout:
            self._abort_multipart(key=key, upload_id=upload_id, futures=futures, wait_for_parts=False)
            raise
        except Exception as exc:  # noqa: BLE001
            self._abort_multipart(key=key, upload_id=upload_id, futures=futures, wait_for_parts=True)
            code = None
            if isinstance(exc, ClientError):
                code = exc.response.get("Error", {}).get("Code")
            raise MultipartUploadFailed(
                f"Multipart upload failed for {key}: {exc}",
                key=key,
                code=code,
                upload_id=upload_id,
            ) from exc
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        return UploadedAsset(
            url=self.build_public_url(key),
            key=key,
            bucket=self.bucket,
            etag=result.get("ETag"),
        )

    def _upload_part(self, key: str, upload_id: str, part_number: int, chunk: memoryview) -> str:
        response = self.client.upload_part(
            Bucket=self.bucket,
            Key=key,
            UploadId=upload_id,
            PartNumber=part_number,
            Body=bytes(chunk),
        )
        return response["ETag"]

    def _abort_multipart(
        self,
        *,
        key: str,
        upload_id: str,
        futures: dict[concurrent.futures.Future, tuple[int, int]],
        wait_for_parts: bool,
    ) -> None:
        """
        Abort the session once no part upload can still land in it.

        Parts already on the wire can complete after AbortMultipartUpload and keep their
        storage, so the abort is sent only after they settle. Past the deadline the caller
        must not block on them: abort now, then abort again from a background thread
        once they finish.
        """
        for future in futures:
            future.cancel()
        in_flight = [future for future in futures if not future.done()]
        if in_flight and wait_for_parts:
            concurrent.futures.wait(in_flight)
            in_flight = []
        self._send_abort(key=key, upload_id=upload_id)
        if in_flight:
            threading.Thread(
                target=self._abort_after_parts,
                kwargs={"key": key, "upload_id": upload_id, "in_flight": in_flight},
                name="multipart-abort",
                daemon=True,
            ).start()

    def _abort_after_parts(self, *, key: str, upload_id: str, in_flight: list[concurrent.futures.Future]) -> None:
        concurrent.futures.wait(in_flight)
        self._send_abort(key=key, upload_id=upload_id)

    def _send_abort(self, *, key: str, upload_id: str) -> None:
        try:
            self.client.abort_multipart_upload(Bucket=self.bucket, Key=key, UploadId=upload_id)
        except (ClientError, BotoCoreError):
            logger.exception(
                "media_storage.multipart_abort_failed",
                extra={"bucket": self.bucket, "key": key, "upload_id": upload_id},
            )
            return
        logger.warning(
            "media_storage.multipart_aborted",
            extra={"bucket": self.bucket, "key": key, "upload_id": upload_id},
        )

    def _check_size(self, size: int, key: str) -> None:
        if size > self.max_object_bytes:
            raise StoreRejected(
                f"Object {key} is {size} bytes; the limit is {self.max_object_bytes} bytes.",
                key=key,
                code="EntityTooLarge",
            )

    def _translate_error(self, exc: Exception, *, key: str, operation: str) -> MediaStorageError:
        if isinstance(exc, ClientError):
            error = exc.response.get("Error", {}) or {}
            code = str(error.get("Code") or "") or None
            status_code = (exc.response.get("ResponseMetadata", {}) or {}).get("HTTPStatusCode")
            message = f"{operation} failed for {key}: {error.get('Message') or code or exc}"
            unavailable = (
                code in _UNAVAILABLE_ERROR_CODES
                or status_code in _UNAVAILABLE_HTTP_STATUSES
                or (isinstance(status_code, int) and status_code >= 500)
            )
            if not unavailable and isinstance(status_code, int) and 400 <= status_code < 500:
                return StoreRejected(message, key=key, code=code)
            if not unavailable and status_code is None and code:
                return StoreRejected(message, key=key, code=code)
            return StoreUnavailable(message, key=key, code=code)
        return StoreUnavailable(f"{operation} failed for {key}: {exc}", key=key, code=type(exc).__name__)
