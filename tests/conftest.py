import hashlib
import os
import sys
import tempfile
import threading
import time
from collections import Counter
from pathlib import Path

import pytest
from botocore.exceptions import ClientError

ROOT_DIR = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT_DIR))

_TEST_DB_DIR = Path(tempfile.mkdtemp(prefix="campaign-ingest-tests-"))
os.environ["DATABASE_URL"] = f"sqlite:///{_TEST_DB_DIR / 'test.db'}"
os.environ.setdefault("CLERK_JWT_ISSUER", "https://clerk.test")
os.environ.setdefault("CLERK_JWKS_URL", "https://clerk.test/.well-known/jwks.json")
os.environ["MEDIA_STORAGE_BUCKET"] = "test-bucket"
os.environ["MEDIA_STORAGE_REGION"] = "us-east-1"
os.environ.pop("MEDIA_STORAGE_PUBLIC_BASE_URL", None)
os.environ.pop("MEDIA_STORAGE_ENDPOINT", None)

from fastapi.testclient import TestClient  # noqa: E402

from campaign_ingest.auth.dependencies import AuthContext, get_current_user  # noqa: E402
from campaign_ingest.db.base import Base, SessionLocal, engine  # noqa: E402
from campaign_ingest.db.deps import get_session  # noqa: E402
from campaign_ingest.db.repositories.campaigns import CampaignsRepository  # noqa: E402
from campaign_ingest.main import app  # noqa: E402
from campaign_ingest.routers.campaigns import get_media_storage  # noqa: E402
from campaign_ingest.services.media_storage import MediaStorage  # noqa: E402


TEST_USER_ID = "test-user"


def client_error(code: str, status_code: int, operation: str = "PutObject") -> ClientError:
    return ClientError(
        {"Error": {"Code": code, "Message": f"{code} (simulated)"}, "ResponseMetadata": {"HTTPStatusCode": status_code}},
        operation,
    )


class FakeS3Client:
    """In-memory stand-in for the boto3 S3 client calls MediaStorage makes."""

    def __init__(self) -> None:
        self.objects: dict[str, dict] = {}
        self.multipart_sessions: dict[str, dict] = {}
        self.completed_uploads: list[str] = []
        self.aborted_uploads: list[str] = []
        self.calls: Counter = Counter()
        self.put_failures: dict[str, Exception] = {}
        self.create_multipart_error: Exception | None = None
        self.fail_part_numbers: set[int] = set()
        self.part_delay_seconds: float = 0.0
        self.part_delays: dict[int, float] = {}
        self.events: list[tuple[str, object]] = []
        self.put_delay_seconds: float = 0.0
        self.active_puts = 0
        self.max_active_puts = 0
        self._lock = threading.Lock()
        self._next_upload = 0

    @property
    def total_calls(self) -> int:
        return sum(self.calls.values())

    def _record(self, name: str) -> None:
        with self._lock:
            self.calls[name] += 1

    def _event(self, name: str, detail: object) -> None:
        with self._lock:
            self.events.append((name, detail))

    def put_object(self, *, Bucket, Key, Body, ContentType=None, Metadata=None):
        self._record("put_object")
        for fragment, error in self.put_failures.items():
            if fragment in Key:
                raise error
        with self._lock:
            self.active_puts += 1
            self.max_active_puts = max(self.max_active_puts, self.active_puts)
        try:
            if self.put_delay_seconds:
                time.sleep(self.put_delay_seconds)
            etag = f'"{hashlib.md5(Body).hexdigest()}"'
            with self._lock:
                self.objects[Key] = {
                    "bucket": Bucket,
                    "body": bytes(Body),
                    "content_type": ContentType,
                    "metadata": dict(Metadata or {}),
                    "etag": etag,
                }
        finally:
            with self._lock:
                self.active_puts -= 1
        return {"ETag": etag}

    def create_multipart_upload(self, *, Bucket, Key, ContentType=None, Metadata=None):
        self._record("create_multipart_upload")
        if self.create_multipart_error is not None:
            raise self.create_multipart_error
        with self._lock:
            self._next_upload += 1
            upload_id = f"upload-{self._next_upload}"
            self.multipart_sessions[upload_id] = {
                "bucket": Bucket,
                "key": Key,
                "content_type": ContentType,
                "metadata": dict(Metadata or {}),
                "parts": {},
            }
        return {"UploadId": upload_id}

    def upload_part(self, *, Bucket, Key, UploadId, PartNumber, Body):
        self._record("upload_part")
        delay = self.part_delays.get(PartNumber, self.part_delay_seconds)
        if delay:
            time.sleep(delay)
        if PartNumber in self.fail_part_numbers:
            self._event("part_failed", PartNumber)
            raise client_error("InternalError", 500, "UploadPart")
        etag = f'"part-{PartNumber}-{hashlib.md5(Body).hexdigest()}"'
        with self._lock:
            session = self.multipart_sessions.get(UploadId)
            if session is None:
                self.events.append(("part_failed", PartNumber))
                raise client_error("NoSuchUpload", 404, "UploadPart")
            session["parts"][PartNumber] = (etag, bytes(Body))
            self.events.append(("part_stored", PartNumber))
        return {"ETag": etag}

    def complete_multipart_upload(self, *, Bucket, Key, UploadId, MultipartUpload):
        self._record("complete_multipart_upload")
        with self._lock:
            session = self.multipart_sessions.pop(UploadId, None)
            if session is None:
                raise client_error("NoSuchUpload", 404, "CompleteMultipartUpload")
            numbers = [part["PartNumber"] for part in MultipartUpload["Parts"]]
            body = b"".join(session["parts"][number][1] for number in numbers)
            etag = f'"{hashlib.md5(body).hexdigest()}-{len(numbers)}"'
            self.objects[Key] = {
                "bucket": Bucket,
                "body": body,
                "content_type": session["content_type"],
                "metadata": session["metadata"],
                "etag": etag,
                "part_numbers": numbers,
            }
            self.completed_uploads.append(UploadId)
        return {"ETag": etag, "Key": Key, "Bucket": Bucket}

    def abort_multipart_upload(self, *, Bucket, Key, UploadId):
        self._record("abort_multipart_upload")
        with self._lock:
            self.multipart_sessions.pop(UploadId, None)
            self.aborted_uploads.append(UploadId)
            self.events.append(("abort", UploadId))
        return {}


@pytest.fixture(scope="session", autouse=True)
def create_schema() -> None:
    Base.metadata.create_all(engine)


@pytest.fixture()
def db_session():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        with engine.begin() as connection:
            for table in reversed(Base.metadata.sorted_tables):
                connection.execute(table.delete())


@pytest.fixture()
def repository(db_session) -> CampaignsRepository:
    return CampaignsRepository(db_session)


@pytest.fixture()
def fake_s3() -> FakeS3Client:
    return FakeS3Client()


@pytest.fixture()
def media_storage(fake_s3) -> MediaStorage:
    return MediaStorage(client=fake_s3, bucket="test-bucket", region="us-east-1")


@pytest.fixture()
def auth_context() -> AuthContext:
    return AuthContext(user_id=TEST_USER_ID)


@pytest.fixture()
def override_dependencies(db_session, auth_context, media_storage):
    def get_session_override():
        try:
            yield db_session
        finally:
            pass

    def get_user_override():
        return auth_context

    app.dependency_overrides[get_session] = get_session_override
    app.dependency_overrides[get_current_user] = get_user_override
    app.dependency_overrides[get_media_storage] = lambda: media_storage
    try:
        yield
    finally:
        app.dependency_overrides.clear()


@pytest.fixture()
def api_client(override_dependencies):
    with TestClient(app) as client:
        yield client
