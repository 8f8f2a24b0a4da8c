#!/usr/bin/env python3
"""
Minecraft world backup manager.

Archives the server's world directories when they have changed since the last
run, uploads the archive to remote storage, prunes old archives locally and
remotely, and notifies operators by Discord webhook and email.
"""
from __future__ import annotations

import argparse
import configparser
import logging
import os
import sys
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Mapping, Optional
from zipfile import ZIP_DEFLATED, ZipFile

from dotenv import load_dotenv

from notifications import (
    BACKUP_LOG_NAME,
    BackupNotice,
    DiscordNotifier,
    EmailNotifier,
    EmailSettings,
    NotificationError,
    append_backup_log,
)
from remote_store import RemoteStoreError, StorageURIError, parse_storage_uri
from retention import (
    BackupArtifact,
    delete_local_artifact,
    list_local_artifacts,
    prune_local,
    prune_remote,
)
from world_state import (
    FINGERPRINT_RECORD_NAME,
    commit_fingerprint,
    compute_fingerprint,
    should_backup,
)


ARCHIVE_NAME_FORMAT = "%d_%B_%Y_%H%M%S"
CONFIG_SECTION = "backup"
DEFAULT_WORLD_DIRS = ("world", "world_nether", "world_the_end")
DEFAULT_PREFIX = "mc_backup_"
DEFAULT_LOCAL_MAX_AGE = "7d"
DEFAULT_REMOTE_KEEP = 5
DEFAULT_COMPRESSION_LEVEL = 9
NOISY_LOGGERS = (
    "boto",
    "boto3",
    "botocore",
    "urllib3",
    "s3transfer",
    "googleapiclient",
    "google_auth_httplib2",
)

TAIL_ERRORS = (OSError, RemoteStoreError, NotificationError)


logger = logging.getLogger(__name__)


class ConfigurationError(Exception):
    """Raised when required configuration is missing or invalid."""


@dataclass
class BackupConfig:
    server_dir: Path
    world_dirs: List[Path]
    fingerprint_dir: Path
    backup_dir: Path
    storage_uri: Optional[str] = None
    gdrive_credentials: Optional[Path] = None
    aws_profile: Optional[str] = None
    aws_region: Optional[str] = None
    archive_prefix: str = DEFAULT_PREFIX
    compression_level: int = DEFAULT_COMPRESSION_LEVEL
    local_max_age: timedelta = timedelta(days=7)
    remote_keep: int = DEFAULT_REMOTE_KEEP
    discord_webhook_url: Optional[str] = None
    email: Optional[EmailSettings] = None

    @property
    def fingerprint_record(self) -> Path:
        return self.backup_dir / FINGERPRINT_RECORD_NAME

    @property
    def backup_log(self) -> Path:
        return self.backup_dir / BACKUP_LOG_NAME


def parse_args(argv: Optional[Iterable[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Back up a Minecraft world when it has changed and prune older archives."
    )
    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        help="Path to an INI config file containing backup parameters.",
    )
    parser.add_argument(
        "--env-file",
        type=Path,
        help="Path to a .env file with environment settings (default: ./.env).",
    )
    parser.add_argument(
        "--server-dir",
        type=Path,
        help="Root of the Minecraft server directory (default: current directory).",
    )
    parser.add_argument(
        "--world-dir",
        dest="world_dirs",
        action="append",
        metavar="NAME",
        help=(
            "World directory to archive, relative to the server directory. "
            "Repeat for several (default: world, world_nether, world_the_end)."
        ),
    )
    parser.add_argument(
        "--fingerprint-dir",
        help="World directory whose files decide whether a backup is needed (default: first world dir).",
    )
    parser.add_argument(
        "--backup-dir",
        type=Path,
        help="Directory where archives, the fingerprint record and the backup log are kept.",
    )
    parser.add_argument(
        "--storage",
        dest="storage_uri",
        metavar="URI",
        help="Remote storage target, e.g. gdrive://<folder_id> or s3://bucket/prefix.",
    )
    parser.add_argument(
        "--gdrive-credentials",
        type=Path,
        help="Service account or authorized user JSON file for Google Drive uploads.",
    )
    parser.add_argument(
        "--aws-profile",
        help="Named AWS shared credentials profile to use for uploads.",
    )
    parser.add_argument(
        "--aws-region",
        help="AWS region when creating the S3 client.",
    )
    parser.add_argument(
        "--archive-prefix",
        help=f"Name prefix of created archives and remote retention filter (default: {DEFAULT_PREFIX}).",
    )
    parser.add_argument(
        "--compression-level",
        type=int,
        help="Deflate level 0-9 for the zip archive (default: 9).",
    )
    parser.add_argument(
        "--local-max-age",
        help="Delete local archives at least this old, e.g. 7d or 36h (default: 7d).",
    )
    parser.add_argument(
        "--remote-keep",
        type=int,
        help="Number of remote archives to keep (default: 5).",
    )
    parser.add_argument(
        "--discord-webhook-url",
        help="Discord webhook receiving a message for every completed backup.",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"],
        help="Logging verbosity (default: INFO).",
    )
    return parser.parse_args(argv)


def read_config_file(config_path: Path) -> Dict[str, str]:
    parser = configparser.ConfigParser()
    read_files = parser.read(config_path)
    if not read_files:
        raise ConfigurationError(f"Config file {config_path} could not be read.")
    if CONFIG_SECTION not in parser:
        raise ConfigurationError(
            f"Config file {config_path} is missing the [{CONFIG_SECTION}] section."
        )
    return {k: v for k, v in parser[CONFIG_SECTION].items()}


def _first_set(*values) -> Optional[str]:
    for value in values:
        if value is None:
            continue
        if isinstance(value, str):
            value = value.strip()
            if not value:
                continue
        return value
    return None


def parse_int(value, name: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError) as error:
        raise ConfigurationError(f"{name} must be an integer.") from error


def parse_name_list(value: str) -> List[str]:
    return [part.strip() for part in value.split(",") if part.strip()]


def format_duration(seconds: int) -> str:
    units = [
        (7 * 24 * 60 * 60, "week"),
        (24 * 60 * 60, "day"),
        (60 * 60, "hour"),
        (60, "minute"),
        (1, "second"),
    ]
    for unit_seconds, label in units:
        if seconds >= unit_seconds and seconds % unit_seconds == 0:
            value = seconds // unit_seconds
            name = label if value == 1 else f"{label}s"
            return f"{value} {name}"
    return f"{seconds} seconds"


def parse_duration(value: str) -> int:
    units = {
        "s": 1,
        "m": 60,
        "h": 60 * 60,
        "d": 24 * 60 * 60,
        "w": 7 * 24 * 60 * 60,
    }

    normalized = value.strip().lower()
    if not normalized:
        raise ConfigurationError("Duration values must not be empty.")

    suffix = normalized[-1]
    if suffix.isalpha():
        if suffix not in units:
            raise ConfigurationError(
                "Unsupported duration suffix. Use one of s, m, h, d, w."
            )
        number_part = normalized[:-1]
    else:
        suffix = "s"
        number_part = normalized

    if not number_part:
        raise ConfigurationError(f"Missing numeric value for duration: {value}")

    try:
        amount = int(number_part)
    except ValueError as error:
        raise ConfigurationError(f"Invalid duration value: {value}") from error

    seconds = amount * units[suffix]
    if seconds <= 0:
        raise ConfigurationError(f"Duration must be positive: {value}")
    return seconds


def _resolve_path(value, base: Path) -> Path:
    path = Path(value).expanduser()
    if not path.is_absolute():
        path = base / path
    return path.resolve()


def _resolve_email(file_cfg: Dict[str, str], environ: Mapping[str, str]) -> Optional[EmailSettings]:
    username = _first_set(file_cfg.get("email_user"), environ.get("EMAIL_USER"))
    password = _first_set(file_cfg.get("email_pass"), environ.get("EMAIL_PASS"))
    recipient = _first_set(file_cfg.get("email_to"), environ.get("EMAIL_TO"))
    if not (username and password and recipient):
        if username or password or recipient:
            logger.warning(
                "Email settings incomplete (need user, password and recipient); "
                "email notifications disabled."
            )
        return None

    host = _first_set(file_cfg.get("smtp_host"), environ.get("SMTP_HOST")) or "smtp.gmail.com"
    port_value = _first_set(file_cfg.get("smtp_port"), environ.get("SMTP_PORT"))
    port = parse_int(port_value, "smtp_port") if port_value is not None else 587
    sender_name = (
        _first_set(file_cfg.get("email_sender_name"), environ.get("EMAIL_SENDER_NAME"))
        or "Minecraft Backups"
    )
    return EmailSettings(
        username=username,
        password=password,
        recipient=recipient,
        smtp_host=host,
        smtp_port=port,
        sender_name=sender_name,
    )


def merge_config(
    args: argparse.Namespace,
    file_config: Optional[Dict[str, str]],
    environ: Optional[Mapping[str, str]] = None,
) -> BackupConfig:
    file_cfg = file_config or {}
    env = os.environ if environ is None else environ

    server_value = _first_set(args.server_dir, file_cfg.get("server_dir"), env.get("MC_SERVER_DIR"))
    server_dir = _resolve_path(server_value or ".", Path.cwd())

    if args.world_dirs:
        world_names = [name for name in args.world_dirs if name.strip()]
    else:
        world_value = _first_set(file_cfg.get("world_dirs"), env.get("MC_WORLD_DIRS"))
        world_names = parse_name_list(world_value) if world_value else list(DEFAULT_WORLD_DIRS)
    if not world_names:
        raise ConfigurationError("At least one world directory must be configured.")
    world_dirs = [_resolve_path(name, server_dir) for name in world_names]

    fingerprint_value = _first_set(
        args.fingerprint_dir, file_cfg.get("fingerprint_dir"), env.get("MC_FINGERPRINT_DIR")
    )
    fingerprint_dir = (
        _resolve_path(fingerprint_value, server_dir) if fingerprint_value else world_dirs[0]
    )

    backup_value = _first_set(args.backup_dir, file_cfg.get("backup_dir"), env.get("MC_BACKUP_DIR"))
    backup_dir = _resolve_path(backup_value or "backups", server_dir)

    gdrive_value = _first_set(
        args.gdrive_credentials,
        file_cfg.get("gdrive_credentials"),
        env.get("GOOGLE_APPLICATION_CREDENTIALS"),
    )
    gdrive_credentials = _resolve_path(gdrive_value, Path.cwd()) if gdrive_value else None
    aws_profile = _first_set(args.aws_profile, file_cfg.get("aws_profile"), env.get("AWS_PROFILE"))
    aws_region = _first_set(args.aws_region, file_cfg.get("aws_region"), env.get("AWS_REGION"))

    storage_uri = _first_set(args.storage_uri, file_cfg.get("storage_uri"), env.get("STORAGE_URI"))
    if storage_uri is None:
        folder_id = _first_set(
            file_cfg.get("gdrive_folder_id"), env.get("GOOGLE_DRIVE_FOLDER_ID")
        )
        if folder_id:
            storage_uri = f"gdrive://{folder_id}"
    if storage_uri is not None:
        try:
            parse_storage_uri(storage_uri)
        except StorageURIError as error:
            raise ConfigurationError(str(error)) from error

    prefix = _first_set(args.archive_prefix, file_cfg.get("archive_prefix"), env.get("ARCHIVE_PREFIX"))
    archive_prefix = prefix or DEFAULT_PREFIX

    compression_value = _first_set(
        args.compression_level, file_cfg.get("compression_level"), env.get("COMPRESSION_LEVEL")
    )
    compression_level = (
        parse_int(compression_value, "compression_level")
        if compression_value is not None
        else DEFAULT_COMPRESSION_LEVEL
    )
    if not 0 <= compression_level <= 9:
        raise ConfigurationError("compression_level must be between 0 and 9.")

    max_age_value = _first_set(
        args.local_max_age, file_cfg.get("local_max_age"), env.get("LOCAL_MAX_AGE")
    )
    local_max_age = timedelta(seconds=parse_duration(max_age_value or DEFAULT_LOCAL_MAX_AGE))

    keep_value = _first_set(args.remote_keep, file_cfg.get("remote_keep"), env.get("REMOTE_KEEP"))
    remote_keep = (
        parse_int(keep_value, "remote_keep") if keep_value is not None else DEFAULT_REMOTE_KEEP
    )
    if remote_keep < 1:
        raise ConfigurationError("remote_keep must be at least 1.")

    webhook = _first_set(
        args.discord_webhook_url,
        file_cfg.get("discord_webhook_url"),
        env.get("DISCORD_WEBHOOK_URL"),
    )

    return BackupConfig(
        server_dir=server_dir,
        world_dirs=world_dirs,
        fingerprint_dir=fingerprint_dir,
        backup_dir=backup_dir,
        storage_uri=storage_uri,
        gdrive_credentials=gdrive_credentials,
        aws_profile=aws_profile,
        aws_region=aws_region,
        archive_prefix=archive_prefix,
        compression_level=compression_level,
        local_max_age=local_max_age,
        remote_keep=remote_keep,
        discord_webhook_url=webhook,
        email=_resolve_email(file_cfg, env),
    )


def _quiet_external_loggers() -> None:
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def configure_logging(log_level: str) -> None:
    level = getattr(logging, log_level.upper(), None)
    if level is None:
        raise ValueError(f"Invalid log level: {log_level}")
    logging.basicConfig(level=level)
    _quiet_external_loggers()


def archive_name(prefix: str, timestamp: datetime) -> str:
    return f"{prefix}{timestamp.astimezone().strftime(ARCHIVE_NAME_FORMAT)}.zip"


def _unique_archive_path(backup_dir: Path, name: str) -> Path:
    candidate = backup_dir / name
    counter = 1
    while candidate.exists():
        candidate = backup_dir / f"{Path(name).stem}_{counter}.zip"
        counter += 1
    return candidate


def create_archive(
    source_dirs: Iterable[Path],
    backup_dir: Path,
    *,
    prefix: str = DEFAULT_PREFIX,
    compression_level: int = DEFAULT_COMPRESSION_LEVEL,
    now: Optional[datetime] = None,
) -> BackupArtifact:
    """Zip ``source_dirs`` into a timestamped archive inside ``backup_dir``.

    Each directory is stored under its own name (``world/level.dat``). Missing
    directories are skipped; if none exist FileNotFoundError is raised. The
    archive is written to a ``.part`` file first and renamed when complete.
    """
    timestamp = now or datetime.now(timezone.utc)
    existing = []
    for source in source_dirs:
        if source.is_dir():
            existing.append(source)
        else:
            logger.warning("World directory %s does not exist, skipping.", source)
    if not existing:
        raise FileNotFoundError("None of the configured world directories exist.")

    backup_dir.mkdir(parents=True, exist_ok=True)
    archive_path = _unique_archive_path(backup_dir, archive_name(prefix, timestamp))
    part_path = archive_path.with_name(archive_path.name + ".part")

    try:
        with ZipFile(
            part_path, mode="w", compression=ZIP_DEFLATED, compresslevel=compression_level
        ) as zip_file:
            for source in existing:
                zip_file.write(source, source.name)
                for path in sorted(source.rglob("*")):
                    zip_file.write(path, str(Path(source.name) / path.relative_to(source)))
        os.replace(part_path, archive_path)
    except BaseException:
        part_path.unlink(missing_ok=True)
        raise

    size = archive_path.stat().st_size
    logger.info("Backup created: %s (%d bytes)", archive_path.name, size)
    return BackupArtifact(
        name=archive_path.name,
        created_at=timestamp,
        size=size,
        path=archive_path,
    )


@dataclass
class StepOutcome:
    step: str
    status: str  # 'ok', 'skipped' or 'failed'
    detail: str = ""


@dataclass
class RunSummary:
    fingerprint: Optional[str] = None
    archive: Optional[BackupArtifact] = None
    uploaded: Optional[BackupArtifact] = None
    steps: List[StepOutcome] = field(default_factory=list)

    @property
    def failed_steps(self) -> List[StepOutcome]:
        return [outcome for outcome in self.steps if outcome.status == "failed"]

    @property
    def status(self) -> str:
        if self.archive is None:
            return "unchanged"
        if self.failed_steps:
            return "partial"
        return "success"

    def outcome(self, step: str) -> Optional[StepOutcome]:
        for outcome in self.steps:
            if outcome.step == step:
                return outcome
        return None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BackupOrchestrator:
    """Runs one backup cycle.

    Fingerprinting, archiving and uploading are fatal: their errors propagate
    to the caller. Everything after the upload is a tail step whose failure is
    logged and recorded in the run summary without stopping later steps.
    """

    def __init__(
        self,
        config: BackupConfig,
        *,
        remote_store=None,
        chat_notifier=None,
        email_notifier=None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.config = config
        self.remote_store = remote_store
        self.chat_notifier = chat_notifier
        self.email_notifier = email_notifier
        self.clock = clock

    @classmethod
    def from_config(cls, config: BackupConfig) -> "BackupOrchestrator":
        remote_store = None
        if config.storage_uri:
            remote_store = parse_storage_uri(
                config.storage_uri,
                gdrive_credentials=config.gdrive_credentials,
                aws_profile=config.aws_profile,
                aws_region=config.aws_region,
            )
        chat_notifier = (
            DiscordNotifier(config.discord_webhook_url) if config.discord_webhook_url else None
        )
        email_notifier = EmailNotifier(config.email) if config.email else None
        return cls(
            config,
            remote_store=remote_store,
            chat_notifier=chat_notifier,
            email_notifier=email_notifier,
        )

    def run(self) -> RunSummary:
        config = self.config
        summary = RunSummary()

        fingerprint = compute_fingerprint(config.fingerprint_dir)
        summary.fingerprint = fingerprint
        if not should_backup(fingerprint, config.fingerprint_record):
            return summary

        archive = create_archive(
            config.world_dirs,
            config.backup_dir,
            prefix=config.archive_prefix,
            compression_level=config.compression_level,
            now=self.clock(),
        )
        summary.archive = archive
        summary.steps.append(StepOutcome("archive", "ok", archive.name))

        summary.steps.append(self._upload(archive, summary))
        commit_fingerprint(fingerprint, config.fingerprint_record)

        self._tail_step(summary, "log", lambda: self._append_log(archive))
        self._tail_step(summary, "prune_remote", lambda: self._prune_remote(archive))
        notice = self._notice(archive, summary)
        self._tail_step(summary, "notify_chat", lambda: self._notify(self.chat_notifier, notice))
        self._tail_step(summary, "notify_email", lambda: self._notify(self.email_notifier, notice))
        self._tail_step(summary, "prune_local", lambda: self._prune_local(archive))

        self._log_summary(summary)
        return summary

    def _upload(self, archive: BackupArtifact, summary: RunSummary) -> StepOutcome:
        if self.remote_store is None:
            logger.error("No remote storage configured; %s was kept locally only.", archive.name)
            return StepOutcome("upload", "skipped", "no remote storage configured")
        if archive.path is None:
            raise ValueError(f"Archive {archive.name} has no local path.")
        uploaded = self.remote_store.upload(archive.path)
        summary.uploaded = uploaded
        return StepOutcome("upload", "ok", self.remote_store.describe())

    def _tail_step(self, summary: RunSummary, step: str, action: Callable[[], StepOutcome]) -> None:
        try:
            outcome = action()
        except TAIL_ERRORS as error:
            logger.error("Step %s failed: %s", step, error)
            outcome = StepOutcome(step, "failed", str(error))
        else:
            outcome.step = step
        summary.steps.append(outcome)

    def _append_log(self, archive: BackupArtifact) -> StepOutcome:
        append_backup_log(self.config.backup_log, archive.name, self.clock())
        return StepOutcome("log", "ok")

    def _prune_remote(self, archive: BackupArtifact) -> StepOutcome:
        if self.remote_store is None:
            return StepOutcome("prune_remote", "skipped", "no remote storage configured")
        artifacts = self.remote_store.list_artifacts(self.config.archive_prefix)
        deleted = prune_remote(
            artifacts,
            keep=self.config.remote_keep,
            name_contains=self.config.archive_prefix,
            delete=self.remote_store.delete,
            protected=[archive.name],
        )
        return StepOutcome("prune_remote", "ok", deleted.name if deleted else "")

    def _notice(self, archive: BackupArtifact, summary: RunSummary) -> BackupNotice:
        if summary.uploaded is not None and self.remote_store is not None:
            storage = self.remote_store.describe()
            browse_url = self.remote_store.browse_url()
        else:
            storage = f"local only ({self.config.backup_dir})"
            browse_url = None
        return BackupNotice(
            backup_name=archive.name,
            size=archive.size,
            storage=storage,
            completed_at=self.clock(),
            browse_url=browse_url,
        )

    def _notify(self, notifier, notice: BackupNotice) -> StepOutcome:
        if notifier is None:
            logger.warning("Notifier not configured, skipping notification.")
            return StepOutcome("", "skipped", "not configured")
        notifier.send(notice)
        return StepOutcome("", "ok")

    def _prune_local(self, archive: BackupArtifact) -> StepOutcome:
        artifacts = list_local_artifacts(self.config.backup_dir, self.config.archive_prefix)
        deleted = prune_local(
            artifacts,
            now=self.clock(),
            max_age=self.config.local_max_age,
            delete=delete_local_artifact,
            protected=[archive.name],
        )
        return StepOutcome("prune_local", "ok", ", ".join(item.name for item in deleted))

    def _log_summary(self, summary: RunSummary) -> None:
        archive_label = summary.archive.name if summary.archive else "-"
        if summary.failed_steps:
            logger.warning(
                "Completed backup cycle with errors: %s; failed steps: %s.",
                archive_label,
                ", ".join(outcome.step for outcome in summary.failed_steps),
            )
        else:
            logger.info(
                "Completed backup cycle: %s; local retention %s, remote keep %d.",
                archive_label,
                format_duration(int(self.config.local_max_age.total_seconds())),
                self.config.remote_keep,
            )


def main(argv: Optional[Iterable[str]] = None) -> int:
    args = parse_args(argv)
    try:
        configure_logging(args.log_level)
    except ValueError as error:
        logging.error("%s", error)
        return 2

    load_dotenv(dotenv_path=args.env_file or Path.cwd() / ".env")

    try:
        file_config: Optional[Dict[str, str]] = None
        if args.config:
            file_config = read_config_file(args.config)
        config = merge_config(args, file_config)
    except ConfigurationError as error:
        logging.error("%s", error)
        return 2

    orchestrator = BackupOrchestrator.from_config(config)
    try:
        summary = orchestrator.run()
    except (OSError, RemoteStoreError, RuntimeError) as error:
        logging.error("Backup failed: %s", error)
        return 1

    if summary.status == "partial":
        logging.warning("Backup stored, but some follow-up steps failed.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
