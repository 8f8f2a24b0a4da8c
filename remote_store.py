"""
Remote storage targets for backup archives.

Two backends share one interface: Google Drive folders (``gdrive://<folder_id>``)
and S3 buckets (``s3://<bucket>/<prefix>``). SDK clients are created lazily so
the tool runs without the SDK of a backend it does not use; tests pass fake
clients to the constructors.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, List, Optional, Tuple, Type
from urllib.parse import urlparse

from retention import BackupArtifact


logger = logging.getLogger(__name__)


class RemoteStoreError(Exception):
    """Raised when a remote storage operation fails."""


class StorageURIError(ValueError):
    """Raised when a storage URI cannot be parsed."""


_GDRIVE_SCOPES = [
    "https://www.googleapis.com/auth/drive.file",
    "https://www.googleapis.com/auth/drive.metadata.readonly",
]


def _drive_errors() -> Tuple[Type[BaseException], ...]:
    from google.auth.exceptions import GoogleAuthError  # type: ignore[import]
    from googleapiclient.errors import Error as GoogleApiError  # type: ignore[import]
    from httplib2 import HttpLib2Error  # type: ignore[import]

    return (GoogleApiError, GoogleAuthError, HttpLib2Error, OSError)


def _s3_errors() -> Tuple[Type[BaseException], ...]:
    from boto3.exceptions import Boto3Error  # type: ignore[import]
    from botocore.exceptions import BotoCoreError, ClientError  # type: ignore[import]

    return (Boto3Error, BotoCoreError, ClientError, OSError)


def _parse_rfc3339(value: str) -> datetime:
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def create_gdrive_service(credentials_path: Optional[Path]):
    try:
        from googleapiclient.discovery import build  # type: ignore[import]
    except ModuleNotFoundError as exc:
        raise RuntimeError(
            "google-api-python-client is required for Google Drive operations. "
            "Install with `pip install google-api-python-client google-auth`."
        ) from exc

    try:
        import google.auth  # type: ignore[import]
        from google.auth.exceptions import DefaultCredentialsError  # type: ignore[import]
    except ModuleNotFoundError as exc:
        raise RuntimeError(
            "google-auth is required for Google Drive operations. "
            "Install with `pip install google-auth`."
        ) from exc

    try:
        if credentials_path:
            creds, _ = google.auth.load_credentials_from_file(
                str(credentials_path), scopes=_GDRIVE_SCOPES
            )
        else:
            creds, _ = google.auth.default(scopes=_GDRIVE_SCOPES)
    except DefaultCredentialsError as exc:
        raise RemoteStoreError(
            "Google Drive operations require credentials. "
            "Provide a service account or authorized user JSON file via "
            "--gdrive-credentials or set GOOGLE_APPLICATION_CREDENTIALS."
        ) from exc

    return build("drive", "v3", credentials=creds, cache_discovery=False)


def create_s3_client(*, aws_profile: Optional[str], aws_region: Optional[str]):
    try:
        import boto3  # type: ignore[import]
    except ModuleNotFoundError as exc:
        raise RuntimeError(
            "boto3 is required for S3 operations. Install with `pip install boto3`."
        ) from exc
    session_kwargs = {}
    if aws_profile:
        session_kwargs["profile_name"] = aws_profile
    if aws_region:
        session_kwargs["region_name"] = aws_region
    session = boto3.Session(**session_kwargs)
    return session.client("s3")


class DriveStore:
    """Backups kept in a single Google Drive folder."""

    def __init__(
        self,
        folder_id: str,
        *,
        credentials_path: Optional[Path] = None,
        service: Any = None,
    ) -> None:
        if not folder_id:
            raise StorageURIError("Google Drive storage requires a folder identifier.")
        self.folder_id = folder_id
        self.credentials_path = credentials_path
        self._service = service

    @property
    def service(self):
        if self._service is None:
            self._service = create_gdrive_service(self.credentials_path)
        return self._service

    def describe(self) -> str:
        return f"gdrive://{self.folder_id}"

    def browse_url(self) -> Optional[str]:
        return f"https://drive.google.com/drive/folders/{self.folder_id}"

    def _to_artifact(self, file_info: dict) -> BackupArtifact:
        name = file_info.get("name", "")
        created_at = datetime.now(timezone.utc)
        created = file_info.get("createdTime")
        if created:
            try:
                created_at = _parse_rfc3339(created)
            except ValueError:
                logger.warning(
                    "Unparseable createdTime %r for Drive file %s, treating it as new.",
                    created,
                    name,
                )
        return BackupArtifact(
            name=name,
            created_at=created_at,
            size=int(file_info.get("size") or 0),
            remote_id=file_info["id"],
        )

    def _find_existing(self, name: str) -> Optional[dict]:
        escaped_name = name.replace("\\", "\\\\").replace("'", "\\'")
        query = (
            f"'{self.folder_id}' in parents and name = '{escaped_name}' and trashed = false"
        )
        response = (
            self.service.files()
            .list(
                q=query,
                spaces="drive",
                fields="files(id, name, createdTime, size)",
                pageSize=1,
            )
            .execute()
        )
        files = response.get("files", [])
        if not files:
            return None
        return files[0]

    def upload(self, backup_path: Path) -> BackupArtifact:
        logger.info("Uploading %s to %s", backup_path.name, self.describe())
        try:
            existing = self._find_existing(backup_path.name)
            if existing is not None:
                logger.info(
                    "Backup %s already present in %s, skipping upload",
                    backup_path.name,
                    self.describe(),
                )
                return self._to_artifact(existing)

            from googleapiclient.http import MediaFileUpload  # type: ignore[import]

            media = MediaFileUpload(
                str(backup_path), mimetype="application/zip", resumable=True
            )
            file_metadata = {"name": backup_path.name, "parents": [self.folder_id]}
            created = (
                self.service.files()
                .create(
                    body=file_metadata,
                    media_body=media,
                    fields="id, name, createdTime, size",
                )
                .execute()
            )
        except _drive_errors() as error:
            raise RemoteStoreError(
                f"Google Drive upload of {backup_path.name} failed: {error}"
            ) from error

        artifact = self._to_artifact(created)
        logger.info("Backup uploaded: %s (id %s)", artifact.name, artifact.remote_id)
        return artifact

    def list_artifacts(self, name_contains: str) -> List[BackupArtifact]:
        escaped = name_contains.replace("\\", "\\\\").replace("'", "\\'")
        query = (
            f"'{self.folder_id}' in parents and name contains '{escaped}' "
            "and trashed = false"
        )
        artifacts: List[BackupArtifact] = []
        page_token: Optional[str] = None
        try:
            while True:
                response = (
                    self.service.files()
                    .list(
                        q=query,
                        spaces="drive",
                        pageSize=1000,
                        fields="nextPageToken, files(id, name, createdTime, size)",
                        pageToken=page_token,
                    )
                    .execute()
                )
                for file_info in response.get("files", []):
                    if name_contains not in file_info.get("name", ""):
                        continue
                    artifacts.append(self._to_artifact(file_info))
                page_token = response.get("nextPageToken")
                if not page_token:
                    break
        except _drive_errors() as error:
            raise RemoteStoreError(f"Google Drive listing failed: {error}") from error

        artifacts.sort(key=lambda artifact: artifact.created_at)
        return artifacts

    def delete(self, artifact: BackupArtifact) -> None:
        if not artifact.remote_id:
            raise RemoteStoreError(f"Artifact {artifact.name} has no Drive file id.")
        try:
            self.service.files().delete(fileId=artifact.remote_id).execute()
        except _drive_errors() as error:
            raise RemoteStoreError(
                f"Google Drive delete of {artifact.name} failed: {error}"
            ) from error
        logger.info("Deleted old backup from Drive: %s", artifact.name)


class S3Store:
    """Backups kept under a key prefix of an S3 bucket."""

    def __init__(
        self,
        bucket: str,
        prefix: Optional[str] = None,
        *,
        aws_profile: Optional[str] = None,
        aws_region: Optional[str] = None,
        client: Any = None,
    ) -> None:
        if not bucket:
            raise StorageURIError("S3 storage requires a bucket.")
        self.bucket = bucket
        self.prefix = prefix.strip("/") if prefix else None
        self.aws_profile = aws_profile
        self.aws_region = aws_region
        self._client = client

    @property
    def client(self):
        if self._client is None:
            self._client = create_s3_client(
                aws_profile=self.aws_profile, aws_region=self.aws_region
            )
        return self._client

    def describe(self) -> str:
        return f"s3://{self.bucket}/{self.prefix or ''}"

    def browse_url(self) -> Optional[str]:
        return None

    def _key_for(self, name: str) -> str:
        return f"{self.prefix + '/' if self.prefix else ''}{name}"

    def _object_exists(self, key: str) -> bool:
        from botocore.exceptions import ClientError  # type: ignore[import]

        try:
            self.client.head_object(Bucket=self.bucket, Key=key)
            return True
        except ClientError as error:
            if error.response.get("ResponseMetadata", {}).get("HTTPStatusCode") == 404:
                return False
            error_code = error.response.get("Error", {}).get("Code")
            if error_code in ("404", "NotFound", "NoSuchKey"):
                return False
            raise

    def upload(self, backup_path: Path) -> BackupArtifact:
        key = self._key_for(backup_path.name)
        logger.info("Uploading %s to s3://%s/%s", backup_path.name, self.bucket, key)
        try:
            if self._object_exists(key):
                logger.info(
                    "Backup %s already present in s3://%s/%s, skipping upload",
                    backup_path.name,
                    self.bucket,
                    key,
                )
            else:
                self.client.upload_file(str(backup_path), self.bucket, key)
            head = self.client.head_object(Bucket=self.bucket, Key=key)
        except _s3_errors() as error:
            raise RemoteStoreError(
                f"S3 upload of {backup_path.name} failed: {error}"
            ) from error

        last_modified = head.get("LastModified") or datetime.now(timezone.utc)
        return BackupArtifact(
            name=backup_path.name,
            created_at=last_modified,
            size=int(head.get("ContentLength") or 0),
            remote_id=key,
        )

    def list_artifacts(self, name_contains: str) -> List[BackupArtifact]:
        list_kwargs = {"Bucket": self.bucket}
        if self.prefix:
            list_kwargs["Prefix"] = self.prefix + "/"

        artifacts: List[BackupArtifact] = []
        try:
            paginator = self.client.get_paginator("list_objects_v2")
            for page in paginator.paginate(**list_kwargs):
                for obj in page.get("Contents", []):
                    key = obj["Key"]
                    name = Path(key).name
                    if name_contains not in name:
                        continue
                    artifacts.append(
                        BackupArtifact(
                            name=name,
                            created_at=obj["LastModified"],
                            size=int(obj.get("Size") or 0),
                            remote_id=key,
                        )
                    )
        except _s3_errors() as error:
            raise RemoteStoreError(f"S3 listing failed: {error}") from error

        artifacts.sort(key=lambda artifact: artifact.created_at)
        return artifacts

    def delete(self, artifact: BackupArtifact) -> None:
        key = artifact.remote_id or self._key_for(artifact.name)
        try:
            self.client.delete_object(Bucket=self.bucket, Key=key)
        except _s3_errors() as error:
            raise RemoteStoreError(
                f"S3 delete of {artifact.name} failed: {error}"
            ) from error
        logger.info("Deleted old backup s3://%s/%s", self.bucket, key)


def parse_storage_uri(
    storage_uri: str,
    *,
    gdrive_credentials: Optional[Path] = None,
    aws_profile: Optional[str] = None,
    aws_region: Optional[str] = None,
):
    parsed = urlparse(storage_uri.strip())
    scheme = parsed.scheme.lower()

    if scheme == "gdrive":
        folder_id_parts = [part for part in (parsed.netloc, parsed.path.strip("/")) if part]
        if not folder_id_parts:
            raise StorageURIError("Google Drive URI must include a folder identifier.")
        if len(folder_id_parts) > 1:
            raise StorageURIError(
                "Google Drive URIs should use the form gdrive://<folder_id>."
            )
        return DriveStore(folder_id_parts[0], credentials_path=gdrive_credentials)

    if scheme == "s3":
        if not parsed.netloc:
            raise StorageURIError("S3 URI must include a bucket name.")
        prefix = parsed.path.strip("/")
        return S3Store(
            parsed.netloc,
            prefix or None,
            aws_profile=aws_profile,
            aws_region=aws_region,
        )

    raise StorageURIError(f"Unsupported storage scheme: {scheme or storage_uri}")
