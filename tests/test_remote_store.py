import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import httplib2
import pytest
from boto3.exceptions import S3UploadFailedError
from botocore.exceptions import ClientError
from google.auth.exceptions import RefreshError

from backup_manager import BackupConfig, BackupOrchestrator

from remote_store import (
    DriveStore,
    RemoteStoreError,
    S3Store,
    StorageURIError,
    parse_storage_uri,
)
from retention import BackupArtifact


class FakeRequest:
    def __init__(self, result=None, error: Optional[Exception] = None) -> None:
        self.result = result
        self.error = error

    def execute(self):
        if self.error is not None:
            raise self.error
        return self.result


class FakeDriveFiles:
    def __init__(
        self,
        pages: List[dict],
        *,
        error: Optional[Exception] = None,
        listing_error: Optional[Exception] = None,
    ) -> None:
        self.pages = pages
        self.error = error
        self.listing_error = listing_error
        self.list_calls: List[dict] = []
        self.created: List[dict] = []
        self.deleted: List[str] = []

    def list(self, **kwargs) -> FakeRequest:
        self.list_calls.append(kwargs)
        if self.error is not None:
            return FakeRequest(error=self.error)
        if kwargs.get("pageSize") == 1:
            name = kwargs["q"].split("name = '", 1)[1].split("'", 1)[0]
            matches = [
                file_info
                for page in self.pages
                for file_info in page.get("files", [])
                if file_info["name"] == name
            ]
            return FakeRequest({"files": matches[:1]})
        if self.listing_error is not None:
            return FakeRequest(error=self.listing_error)
        token = kwargs.get("pageToken")
        index = int(token) if token else 0
        return FakeRequest(self.pages[index])

    def create(self, *, body: dict, media_body, fields: str) -> FakeRequest:
        self.created.append(body)
        return FakeRequest(
            {
                "id": "new-id",
                "name": body["name"],
                "createdTime": "2024-03-10T12:00:00.000Z",
                "size": "42",
            }
        )

    def delete(self, *, fileId: str) -> FakeRequest:
        if self.error is not None:
            return FakeRequest(error=self.error)
        self.deleted.append(fileId)
        return FakeRequest({})


class FakeDriveService:
    def __init__(self, files: FakeDriveFiles) -> None:
        self._files = files

    def files(self) -> FakeDriveFiles:
        return self._files


def drive_file(file_id: str, name: str, created: str) -> Dict[str, str]:
    return {"id": file_id, "name": name, "createdTime": created, "size": "10"}


def test_drive_list_artifacts_follows_pages_and_sorts(tmp_path: Path) -> None:
    files = FakeDriveFiles(
        [
            {
                "files": [drive_file("b", "mc_backup_b.zip", "2024-03-02T00:00:00.000Z")],
                "nextPageToken": "1",
            },
            {"files": [drive_file("a", "mc_backup_a.zip", "2024-03-01T00:00:00Z")]},
        ]
    )
    store = DriveStore("folder123", service=FakeDriveService(files))

    artifacts = store.list_artifacts("mc_backup_")

    assert [artifact.remote_id for artifact in artifacts] == ["a", "b"]
    assert artifacts[0].created_at == datetime(2024, 3, 1, tzinfo=timezone.utc)
    assert artifacts[0].size == 10
    query = files.list_calls[0]["q"]
    assert "'folder123' in parents" in query
    assert "name contains 'mc_backup_'" in query
    assert "trashed = false" in query


def test_drive_upload_creates_file_in_folder(tmp_path: Path) -> None:
    backup = tmp_path / "mc_backup_1.zip"
    backup.write_bytes(b"zip")
    files = FakeDriveFiles([{"files": []}])
    store = DriveStore("folder123", service=FakeDriveService(files))

    artifact = store.upload(backup)

    assert files.created == [{"name": "mc_backup_1.zip", "parents": ["folder123"]}]
    assert artifact.remote_id == "new-id"
    assert artifact.size == 42


def test_drive_upload_skips_existing_file(tmp_path: Path) -> None:
    backup = tmp_path / "mc_backup_1.zip"
    backup.write_bytes(b"zip")
    files = FakeDriveFiles(
        [{"files": [drive_file("old-id", "mc_backup_1.zip", "2024-03-01T00:00:00Z")]}]
    )
    store = DriveStore("folder123", service=FakeDriveService(files))

    artifact = store.upload(backup)

    assert files.created == []
    assert artifact.remote_id == "old-id"


def test_drive_delete_uses_file_id() -> None:
    files = FakeDriveFiles([])
    store = DriveStore("folder123", service=FakeDriveService(files))

    store.delete(
        BackupArtifact(
            name="mc_backup_a.zip",
            created_at=datetime(2024, 3, 1, tzinfo=timezone.utc),
            remote_id="a",
        )
    )

    assert files.deleted == ["a"]


def test_drive_errors_are_wrapped() -> None:
    files = FakeDriveFiles([], error=ConnectionError("network down"))
    store = DriveStore("folder123", service=FakeDriveService(files))

    with pytest.raises(RemoteStoreError):
        store.list_artifacts("mc_backup_")

    with pytest.raises(RemoteStoreError):
        store.delete(
            BackupArtifact(
                name="mc_backup_a.zip",
                created_at=datetime(2024, 3, 1, tzinfo=timezone.utc),
                remote_id="a",
            )
        )

@pytest.mark.parametrize(
    "error",
    [
        httplib2.ServerNotFoundError("Unable to find the server at www.googleapis.com"),
        RefreshError("invalid_grant: Token has been expired or revoked."),
    ],
)
def test_drive_transport_and_auth_errors_are_wrapped(error: Exception) -> None:
    files = FakeDriveFiles([], error=error)
    store = DriveStore("folder123", service=FakeDriveService(files))

    with pytest.raises(RemoteStoreError):
        store.list_artifacts("mc_backup_")

    with pytest.raises(RemoteStoreError):
        store.delete(
            BackupArtifact(
                name="mc_backup_a.zip",
                created_at=datetime(2024, 3, 1, tzinfo=timezone.utc),
                remote_id="a",
            )
        )


def test_drive_malformed_created_time_is_treated_as_new() -> None:
    files = FakeDriveFiles([{"files": [drive_file("x", "mc_backup_x.zip", "not-a-date")]}])
    store = DriveStore("folder123", service=FakeDriveService(files))
    before = datetime.now(timezone.utc)

    artifacts = store.list_artifacts("mc_backup_")

    assert [artifact.remote_id for artifact in artifacts] == ["x"]
    assert artifacts[0].created_at.tzinfo is not None
    assert artifacts[0].created_at >= before


class RecordingNotifier:
    def __init__(self) -> None:
        self.notices = []

    def send(self, notice) -> None:
        self.notices.append(notice)


def test_drive_listing_failure_does_not_stop_run(tmp_path: Path) -> None:
    server = tmp_path / "server"
    (server / "world").mkdir(parents=True)
    (server / "world" / "level.dat").write_bytes(b"level")
    config = BackupConfig(
        server_dir=server,
        world_dirs=[server / "world"],
        fingerprint_dir=server / "world",
        backup_dir=server / "backups",
    )
    files = FakeDriveFiles(
        [{"files": []}],
        listing_error=httplib2.ServerNotFoundError("Unable to find the server"),
    )
    store = DriveStore("folder123", service=FakeDriveService(files))
    chat = RecordingNotifier()

    summary = BackupOrchestrator(config, remote_store=store, chat_notifier=chat).run()

    assert summary.outcome("upload").status == "ok"
    assert summary.outcome("prune_remote").status == "failed"
    assert summary.outcome("prune_local").status == "ok"
    assert len(chat.notices) == 1
    assert summary.status == "partial"



def not_found_error() -> ClientError:
    return ClientError(
        {"Error": {"Code": "404"}, "ResponseMetadata": {"HTTPStatusCode": 404}},
        "HeadObject",
    )


class FakeS3Paginator:
    def __init__(self, pages: List[dict]) -> None:
        self.pages = pages
        self.kwargs: Dict[str, str] = {}

    def paginate(self, **kwargs):
        self.kwargs = kwargs
        return iter(self.pages)


class FakeS3Client:
    def __init__(
        self,
        *,
        pages: Optional[List[dict]] = None,
        existing: Optional[set] = None,
        upload_error: Optional[Exception] = None,
    ) -> None:
        self.existing = set(existing or ())
        self.upload_error = upload_error
        self.uploads: List[tuple] = []
        self.deleted: List[str] = []
        self.paginator = FakeS3Paginator(pages or [])

    def head_object(self, *, Bucket: str, Key: str) -> dict:
        if Key not in self.existing:
            raise not_found_error()
        return {
            "LastModified": datetime(2024, 3, 10, tzinfo=timezone.utc),
            "ContentLength": 3,
        }

    def upload_file(self, filename: str, bucket: str, key: str) -> None:
        if self.upload_error is not None:
            raise self.upload_error
        self.uploads.append((filename, bucket, key))
        self.existing.add(key)

    def get_paginator(self, name: str) -> FakeS3Paginator:
        assert name == "list_objects_v2"
        return self.paginator

    def delete_object(self, *, Bucket: str, Key: str) -> None:
        self.deleted.append(Key)


def test_s3_upload_puts_object_under_prefix(tmp_path: Path) -> None:
    backup = tmp_path / "mc_backup_1.zip"
    backup.write_bytes(b"zip")
    client = FakeS3Client()
    store = S3Store("my-bucket", "minecraft/world/", client=client)

    artifact = store.upload(backup)

    assert client.uploads == [(str(backup), "my-bucket", "minecraft/world/mc_backup_1.zip")]
    assert artifact.remote_id == "minecraft/world/mc_backup_1.zip"
    assert artifact.size == 3


def test_s3_upload_skips_existing(tmp_path: Path) -> None:
    backup = tmp_path / "mc_backup_1.zip"
    backup.write_bytes(b"zip")
    client = FakeS3Client(existing={"mc_backup_1.zip"})
    store = S3Store("my-bucket", client=client)

    store.upload(backup)

    assert client.uploads == []


def test_s3_list_and_delete(tmp_path: Path) -> None:
    pages = [
        {
            "Contents": [
                {
                    "Key": "world/mc_backup_b.zip",
                    "LastModified": datetime(2024, 3, 2, tzinfo=timezone.utc),
                    "Size": 5,
                },
                {
                    "Key": "world/notes.txt",
                    "LastModified": datetime(2024, 1, 1, tzinfo=timezone.utc),
                    "Size": 1,
                },
            ]
        },
        {
            "Contents": [
                {
                    "Key": "world/mc_backup_a.zip",
                    "LastModified": datetime(2024, 3, 1, tzinfo=timezone.utc),
                    "Size": 4,
                }
            ]
        },
    ]
    client = FakeS3Client(pages=pages)
    store = S3Store("my-bucket", "world", client=client)

    artifacts = store.list_artifacts("mc_backup_")

    assert client.paginator.kwargs == {"Bucket": "my-bucket", "Prefix": "world/"}
    assert [artifact.name for artifact in artifacts] == ["mc_backup_a.zip", "mc_backup_b.zip"]

    store.delete(artifacts[0])
    assert client.deleted == ["world/mc_backup_a.zip"]


def test_parse_storage_uri_builds_stores(tmp_path: Path) -> None:
    drive = parse_storage_uri("gdrive://abc123", gdrive_credentials=tmp_path / "creds.json")
    assert isinstance(drive, DriveStore)
    assert drive.folder_id == "abc123"
    assert drive.browse_url() == "https://drive.google.com/drive/folders/abc123"

    s3 = parse_storage_uri("s3://bucket/backups", aws_region="eu-west-1")
    assert isinstance(s3, S3Store)
    assert s3.bucket == "bucket"
    assert s3.prefix == "backups"
    assert s3.aws_region == "eu-west-1"


@pytest.mark.parametrize(
    "uri",
    ["gdrive://", "gdrive://a/b", "s3:///prefix", "ftp://host/path", "/var/backups"],
)
def test_parse_storage_uri_rejects_invalid(uri: str) -> None:
    with pytest.raises(StorageURIError):
        parse_storage_uri(uri)


def test_s3_upload_failure_is_wrapped(tmp_path: Path) -> None:
    backup = tmp_path / "mc_backup_1.zip"
    backup.write_bytes(b"zip")
    client = FakeS3Client(
        upload_error=S3UploadFailedError(
            "Failed to upload mc_backup_1.zip to my-bucket/mc_backup_1.zip: AccessDenied"
        )
    )
    store = S3Store("my-bucket", client=client)

    with pytest.raises(RemoteStoreError):
        store.upload(backup)

    assert client.uploads == []
