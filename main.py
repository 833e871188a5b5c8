import asyncio
import contextvars
import datetime
import hashlib
import heapq
import hmac
import inspect
import json
import logging
import os
import secrets
import sqlite3
import sys
import time
import uuid
from collections.abc import AsyncIterator, Awaitable, Callable, Iterable, Iterator
from concurrent.futures import ThreadPoolExecutor
from contextlib import asynccontextmanager, contextmanager
from enum import Enum
from pathlib import Path
from typing import Any, Protocol, cast
from urllib.parse import urlsplit

import uvicorn
import yt_dlp
from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Security
from fastapi.responses import JSONResponse
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, Field
from redis import asyncio as redis
from redis.exceptions import RedisError
from starlette.requests import Request

# ----------------------------
# Logging setup
# ----------------------------

_request_id_ctx: contextvars.ContextVar[str] = contextvars.ContextVar("request_id", default="-")


class RequestIdFilter(logging.Filter):
    """Attach request_id to all log records for correlation."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = _request_id_ctx.get()
        return True


logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s request_id=%(request_id)s %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)
for _handler in logging.getLogger().handlers:
    _handler.addFilter(RequestIdFilter())
logger = logging.getLogger("media-resolver")
logger.addFilter(RequestIdFilter())


# ----------------------------
# Settings
# ----------------------------

DEFAULT_API_KEY_HEADER_NAME = "X-API-Key"
DEFAULT_API_KEY_ENABLED_ENV = "API_KEY_AUTH_ENABLED"
DEFAULT_MASTER_API_KEY_ENV = "API_MASTER_KEY"
DEFAULT_USER_ID_HEADER_NAME = "X-User-ID"

DEFAULT_COOKIES_FILE_ENV = "COOKIES_FILE"

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)


def _env_truthy(value: str | None, *, default: bool = False) -> bool:
    """Parse common truthy/falsey strings from environment variables."""
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "t", "yes", "y", "on"}:
        return True
    if normalized in {"0", "false", "f", "no", "n", "off"}:
        return False
    return default


def _env_int(value: str | None, *, default: int) -> int:
    """Parse integer from environment variable with default."""
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _env_float(value: str | None, *, default: float) -> float:
    """Parse float from environment variable with default."""
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


class AuthConfig(BaseModel):
    """
    Authentication configuration loaded from environment variables.

    - enabled: global kill-switch for API key auth
    - master_key: master API key value used for authentication
    - header_name: header used to pass key (default X-API-Key)
    - user_header_name: header carrying the caller's user id, set by the upstream
      auth gateway (default X-User-ID). Requests without it are anonymous.
    """

    enabled: bool = Field(default=False)
    master_key: str | None = Field(default=None)
    header_name: str = Field(default=DEFAULT_API_KEY_HEADER_NAME)
    user_header_name: str = Field(default=DEFAULT_USER_ID_HEADER_NAME)

    @classmethod
    def from_env(cls) -> "AuthConfig":
        enabled = _env_truthy(os.getenv(DEFAULT_API_KEY_ENABLED_ENV), default=False)
        master_key = os.getenv(DEFAULT_MASTER_API_KEY_ENV)
        header_name = os.getenv("API_KEY_HEADER_NAME", DEFAULT_API_KEY_HEADER_NAME).strip()
        user_header_name = os.getenv("USER_ID_HEADER_NAME", DEFAULT_USER_ID_HEADER_NAME).strip()
        cfg = cls(
            enabled=enabled,
            master_key=master_key,
            header_name=header_name,
            user_header_name=user_header_name,
        )
        logger.info(
            "Auth config loaded enabled=%s header_name=%s user_header_name=%s master_key_set=%s",
            cfg.enabled,
            cfg.header_name,
            cfg.user_header_name,
            bool(cfg.master_key),
        )
        return cfg


class CookieConfig(BaseModel):
    """
    Cookie configuration loaded from environment variables.

    - cookies_file: path to a cookies.txt file passed to every extraction (optional)
    """

    cookies_file: str | None = Field(default=None)

    @classmethod
    def from_env(cls) -> "CookieConfig":
        cookies_file = os.getenv(DEFAULT_COOKIES_FILE_ENV)
        if cookies_file:
            cookies_file = cookies_file.strip()
            if not Path(cookies_file).is_file():
                logger.warning("COOKIES_FILE points to non-existent file=%s", cookies_file)
                cookies_file = None
            else:
                logger.info("Cookie config loaded cookies_file=%s", cookies_file)
        return cls(cookies_file=cookies_file)


class ResolverConfig(BaseModel):
    """Job, dedup and gate settings."""

    db_file: str = Field(default="jobs.db", description="SQLite file for jobs and the job queue")
    redis_url: str | None = Field(
        default=None,
        description="Redis URL for the dedup cache and gate tokens (in-process store when unset)",
    )
    job_retention_hours: float = Field(default=24.0, gt=0)
    dedup_ttl_seconds: int = Field(default=3600, ge=1)
    gate_token_ttl_seconds: int = Field(default=600, ge=1)
    premium_height_threshold: int = Field(default=720, ge=0)
    target_ext: str = Field(default="mp4")

    @classmethod
    def from_env(cls) -> "ResolverConfig":
        cfg = cls(
            db_file=os.getenv("DB_FILE", "jobs.db"),
            redis_url=os.getenv("REDIS_URL") or None,
            job_retention_hours=_env_float(os.getenv("JOB_RETENTION_HOURS"), default=24.0),
            dedup_ttl_seconds=_env_int(os.getenv("DEDUP_TTL_SECONDS"), default=3600),
            gate_token_ttl_seconds=_env_int(os.getenv("GATE_TOKEN_TTL_SECONDS"), default=600),
            premium_height_threshold=_env_int(os.getenv("PREMIUM_HEIGHT_THRESHOLD"), default=720),
            target_ext=os.getenv("TARGET_EXT", "mp4").strip().lower(),
        )
        logger.info(
            "Resolver config loaded db_file=%s redis=%s retention_hours=%s dedup_ttl=%d "
            "gate_ttl=%d premium_threshold=%d target_ext=%s",
            cfg.db_file,
            bool(cfg.redis_url),
            cfg.job_retention_hours,
            cfg.dedup_ttl_seconds,
            cfg.gate_token_ttl_seconds,
            cfg.premium_height_threshold,
            cfg.target_ext,
        )
        return cfg


class WorkerConfig(BaseModel):
    """Worker pool and job queue settings."""

    max_workers: int = Field(default=10, ge=1)
    extract_timeout: float = Field(default=45.0, gt=0, description="Hard bound per extraction")
    visibility_timeout: float = Field(
        default=120.0, gt=0, description="Seconds before an unacknowledged job is redelivered"
    )
    max_deliveries: int = Field(default=3, ge=1)
    poll_interval: float = Field(default=1.0, gt=0)
    extractor_threads: int | None = Field(default=None, ge=1)

    @classmethod
    def from_env(cls) -> "WorkerConfig":
        threads = _env_int(os.getenv("EXTRACTOR_THREADS"), default=0)
        cfg = cls(
            max_workers=_env_int(os.getenv("MAX_WORKERS"), default=10),
            extract_timeout=_env_float(os.getenv("EXTRACT_TIMEOUT_SECONDS"), default=45.0),
            visibility_timeout=_env_float(os.getenv("VISIBILITY_TIMEOUT_SECONDS"), default=120.0),
            max_deliveries=_env_int(os.getenv("MAX_DELIVERIES"), default=3),
            poll_interval=_env_float(os.getenv("QUEUE_POLL_INTERVAL"), default=1.0),
            extractor_threads=threads if threads > 0 else None,
        )
        if cfg.visibility_timeout <= cfg.extract_timeout:
            logger.warning(
                "Visibility timeout does not exceed extract timeout; live jobs may be redelivered "
                "visibility_timeout=%s extract_timeout=%s",
                cfg.visibility_timeout,
                cfg.extract_timeout,
            )
        logger.info(
            "Worker config loaded max_workers=%d extract_timeout=%s visibility_timeout=%s "
            "max_deliveries=%d poll_interval=%s",
            cfg.max_workers,
            cfg.extract_timeout,
            cfg.visibility_timeout,
            cfg.max_deliveries,
            cfg.poll_interval,
        )
        return cfg


class PlanConfig(BaseModel):
    """
    Plan tiers used by the gate.

    - user_plans: user id -> plan name, from the USER_PLANS JSON object
    - privileged_plans: plan names that skip the unlock step
    """

    user_plans: dict[str, str] = Field(default_factory=dict)
    privileged_plans: list[str] = Field(default_factory=lambda: ["premium", "enterprise"])

    @classmethod
    def from_env(cls) -> "PlanConfig":
        user_plans: dict[str, str] = {}
        raw = os.getenv("USER_PLANS")
        if raw:
            try:
                parsed = json.loads(raw)
            except json.JSONDecodeError:
                logger.warning("USER_PLANS is not valid JSON, ignoring")
            else:
                if isinstance(parsed, dict):
                    user_plans = {str(k): str(v) for k, v in parsed.items()}
                else:
                    logger.warning("USER_PLANS must be a JSON object, ignoring")

        privileged_raw = os.getenv("PRIVILEGED_PLANS")
        if privileged_raw is None:
            cfg = cls(user_plans=user_plans)
        else:
            plans = [p.strip().lower() for p in privileged_raw.split(",") if p.strip()]
            cfg = cls(user_plans=user_plans, privileged_plans=plans)
        logger.info(
            "Plan config loaded users=%d privileged_plans=%s",
            len(cfg.user_plans),
            cfg.privileged_plans,
        )
        return cfg


auth_config = AuthConfig.from_env()
api_key_header = APIKeyHeader(name=auth_config.header_name, auto_error=False)


async def require_api_key(api_key: str | None = Security(api_key_header)) -> None:
    """Global API key dependency."""
    if not auth_config.enabled:
        return

    if not auth_config.master_key:
        logger.error(
            "API key auth enabled but master key env var missing env=%s", DEFAULT_MASTER_API_KEY_ENV
        )
        raise HTTPException(
            status_code=500,
            detail=f"API key auth is enabled but {DEFAULT_MASTER_API_KEY_ENV} is not set.",
        )

    if not api_key or api_key != auth_config.master_key:
        logger.warning("Authentication failed (invalid/missing API key)")
        raise HTTPException(status_code=401, detail="Invalid or missing API key.")


# ----------------------------
# Errors
# ----------------------------


class ResolverError(Exception):
    """
    Base error with an HTTP mapping.

    Only errors with expose=True send their message to the caller; the rest
    answer with default_detail so infrastructure details stay in the logs.
    """

    status_code: int = 500
    expose: bool = False
    default_detail: str = "Internal Server Error"
    code: str | None = None

    @property
    def detail(self) -> str:
        if self.expose and self.args:
            return str(self.args[0])
        return self.default_detail


class InvalidRequestError(ResolverError):
    status_code = 400
    expose = True
    default_detail = "Invalid request"


class AuthenticationRequiredError(ResolverError):
    status_code = 401
    expose = True
    default_detail = "Authentication required"


class VerificationFailure(ResolverError):
    """Gate token absent or wrong. Never says which."""

    status_code = 402
    default_detail = "Verification failed"
    code = "AD_VERIFICATION_FAILED"


class JobNotFoundError(ResolverError):
    status_code = 404
    expose = True
    default_detail = "Job not found"


class ExtractionError(ResolverError):
    """Extractor failure; recorded on the job, never returned to the submitter."""


class InvalidTransitionError(ResolverError):
    pass


class StoreError(ResolverError):
    pass


class QueueError(ResolverError):
    pass


# ----------------------------
# Domain models
# ----------------------------


class JobStatus(str, Enum):
    pending = "pending"
    processing = "processing"
    ready = "ready"
    failed = "failed"


# Target status -> statuses it may be entered from. Nothing leaves ready or failed.
# processing -> processing is a redelivered job being claimed again.
# pending -> failed covers jobs that could not be queued.
ALLOWED_TRANSITIONS: dict[JobStatus, tuple[JobStatus, ...]] = {
    JobStatus.processing: (JobStatus.pending, JobStatus.processing),
    JobStatus.ready: (JobStatus.processing,),
    JobStatus.failed: (JobStatus.pending, JobStatus.processing),
}


class FormatVariant(BaseModel):
    format_id: str
    quality: str
    file_size: int = 0
    source_link: str | None = None
    is_premium: bool = False


class VideoMetadata(BaseModel):
    title: str = "Unknown Title"
    duration: float = 0
    thumbnail: str = ""
    view_count: int = 0
    uploader: str = "Unknown"
    platform: str = "web"
    formats: list[FormatVariant] = Field(default_factory=list)


class Job(BaseModel):
    id: str
    owner_id: str | None = None
    source_url: str
    fingerprint: str
    status: JobStatus
    metadata: VideoMetadata | None = None
    download_url: str | None = None
    error: str | None = None
    attempts: int = 0
    created_at: datetime.datetime
    updated_at: datetime.datetime
    expires_at: datetime.datetime


class SubmitRequest(BaseModel):
    url: str


class UnlockRequest(BaseModel):
    job_id: str
    ad_token: str | None = Field(
        default=None, description="Token issued once the caller completed the ad step"
    )


class QueueMessage(BaseModel):
    job_id: str
    source_url: str
    owner_id: str | None = None
    receipt: str
    deliveries: int


class JobEvent(str, Enum):
    completed = "completed"
    failed = "failed"


JobObserver = Callable[[JobEvent, Job], Awaitable[None] | None]


# ----------------------------
# Utilities
# ----------------------------

ALLOWED_URL_SCHEMES = frozenset({"http", "https"})


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


def ensure_dir(path: str) -> str:
    Path(path).mkdir(parents=True, exist_ok=True)
    return path


def validate_source_url(url: str | None) -> str:
    """Trim a submitted URL and reject anything that is not an absolute http(s) URL."""
    value = (url or "").strip()
    try:
        parts = urlsplit(value)
    except ValueError as err:
        raise InvalidRequestError("Invalid URL provided") from err
    if parts.scheme.lower() not in ALLOWED_URL_SCHEMES or not parts.netloc:
        logger.info("Rejected submission url=%r", value[:200])
        raise InvalidRequestError("Invalid URL provided")
    return value


def fingerprint_url(url: str) -> str:
    return hashlib.sha256(url.strip().encode("utf-8")).hexdigest()


# ----------------------------
# Normalization
# ----------------------------

UNKNOWN_QUALITY = "Unknown"


def quality_label(height: Any) -> str:
    """1080 -> '1080p'; missing or unusable heights map to 'Unknown'."""
    if height is None or isinstance(height, bool):
        return UNKNOWN_QUALITY
    try:
        value = int(height)
    except (TypeError, ValueError):
        return UNKNOWN_QUALITY
    if value <= 0:
        return UNKNOWN_QUALITY
    return f"{value}p"


def quality_rank(quality: str) -> int:
    number = quality[:-1]
    if quality.endswith("p") and number.isdigit():
        return int(number)
    return -1


def _has_track(codec: Any) -> bool:
    # yt-dlp reports a missing track as the literal "none"; absent means unknown.
    return codec != "none"


def _format_from_raw(raw: dict[str, Any], premium_threshold: int) -> FormatVariant:
    quality = quality_label(raw.get("height"))
    size = raw.get("filesize") or raw.get("filesize_approx") or 0
    try:
        file_size = int(size)
    except (TypeError, ValueError):
        file_size = 0
    return FormatVariant(
        format_id=str(raw.get("format_id") or ""),
        quality=quality,
        file_size=file_size,
        source_link=raw.get("url"),
        is_premium=quality_rank(quality) > premium_threshold,
    )


def collapse_variants(variants: Iterable[FormatVariant]) -> list[FormatVariant]:
    """Keep the first variant per quality, then order by descending quality ('Unknown' last)."""
    seen: set[str] = set()
    unique: list[FormatVariant] = []
    for variant in variants:
        if variant.quality in seen:
            continue
        seen.add(variant.quality)
        unique.append(variant)
    return sorted(unique, key=lambda v: quality_rank(v.quality), reverse=True)


def normalize_formats(
    raw_formats: Iterable[Any],
    *,
    target_ext: str = "mp4",
    premium_threshold: int = 720,
) -> list[FormatVariant]:
    candidates = [
        _format_from_raw(f, premium_threshold)
        for f in raw_formats
        if isinstance(f, dict)
        and f.get("ext") == target_ext
        and _has_track(f.get("acodec"))
        and _has_track(f.get("vcodec"))
    ]
    return collapse_variants(candidates)


def normalize_metadata(
    raw: Any,
    *,
    target_ext: str = "mp4",
    premium_threshold: int = 720,
) -> VideoMetadata:
    """
    Turn a raw extractor info dict into VideoMetadata.

    Optional upstream fields fall back to defaults. Output that is not an info
    object at all is an ExtractionError.
    """
    if not isinstance(raw, dict):
        raise ExtractionError("Malformed extractor output: expected an object")
    raw_formats = raw.get("formats") or []
    if not isinstance(raw_formats, list):
        raise ExtractionError("Malformed extractor output: 'formats' is not a list")

    try:
        formats = normalize_formats(
            raw_formats, target_ext=target_ext, premium_threshold=premium_threshold
        )
        return VideoMetadata(
            title=raw.get("title") or "Unknown Title",
            duration=raw.get("duration") or 0,
            thumbnail=raw.get("thumbnail") or "",
            view_count=raw.get("view_count") or 0,
            uploader=raw.get("uploader") or "Unknown",
            platform=raw.get("extractor") or "web",
            formats=formats,
        )
    except ValueError as err:
        raise ExtractionError(f"Malformed extractor output: {err}") from err


# ----------------------------
# Persistence (SQLite)
# ----------------------------


class JobStore:
    """
    Jobs table. Single source of truth for job state.

    Every transition is one conditional UPDATE, so a reader sees either the old
    row or the new one (status, metadata and error always change together).
    """

    def __init__(self, db_file: str = "jobs.db", *, retention_hours: float = 24.0):
        self.db_file = db_file
        self.retention = datetime.timedelta(hours=retention_hours)
        self._init_db()

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = sqlite3.connect(self.db_file, timeout=30)
        except sqlite3.Error as exc:
            logger.exception("Error opening database db_file=%s", self.db_file)
            raise StoreError(str(exc)) from exc
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as exc:
            conn.rollback()
            logger.exception("Database error db_file=%s", self.db_file)
            raise StoreError(str(exc)) from exc
        finally:
            conn.close()

    def _init_db(self) -> None:
        logger.info("Initializing job store db_file=%s", self.db_file)
        parent = Path(self.db_file).parent
        if str(parent) not in ("", "."):
            ensure_dir(str(parent))
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS jobs (
                    id TEXT PRIMARY KEY,
                    owner_id TEXT,
                    source_url TEXT NOT NULL,
                    fingerprint TEXT NOT NULL,
                    status TEXT NOT NULL,
                    metadata TEXT,
                    download_url TEXT,
                    error TEXT,
                    attempts INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    expires_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_jobs_owner ON jobs (owner_id, status, created_at)"
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_jobs_fingerprint ON jobs (fingerprint)")

    @staticmethod
    def _row_to_job(row: sqlite3.Row) -> Job:
        metadata = VideoMetadata.model_validate_json(row["metadata"]) if row["metadata"] else None
        return Job(
            id=row["id"],
            owner_id=row["owner_id"],
            source_url=row["source_url"],
            fingerprint=row["fingerprint"],
            status=JobStatus(row["status"]),
            metadata=metadata,
            download_url=row["download_url"],
            error=row["error"],
            attempts=row["attempts"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            expires_at=row["expires_at"],
        )

    def create(self, owner_id: str | None, source_url: str, fingerprint: str) -> Job:
        now = _utcnow()
        job = Job(
            id=str(uuid.uuid4()),
            owner_id=owner_id,
            source_url=source_url,
            fingerprint=fingerprint,
            status=JobStatus.pending,
            created_at=now,
            updated_at=now,
            expires_at=now + self.retention,
        )
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO jobs
                (id, owner_id, source_url, fingerprint, status, attempts,
                 created_at, updated_at, expires_at)
                VALUES (?, ?, ?, ?, ?, 0, ?, ?, ?)
                """,
                (
                    job.id,
                    job.owner_id,
                    job.source_url,
                    job.fingerprint,
                    job.status.value,
                    job.created_at.isoformat(),
                    job.updated_at.isoformat(),
                    job.expires_at.isoformat(),
                ),
            )
        logger.info(
            "Created job job_id=%s owner_id=%s fingerprint=%s url=%s",
            job.id,
            owner_id,
            fingerprint[:12],
            source_url,
        )
        return job

    def get(self, job_id: str) -> Job | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)).fetchone()
        return self._row_to_job(row) if row else None

    def transition(
        self,
        job_id: str,
        new_status: JobStatus,
        *,
        metadata: VideoMetadata | None = None,
        error: str | None = None,
    ) -> Job:
        allowed_from = ALLOWED_TRANSITIONS.get(new_status)
        if not allowed_from:
            raise InvalidTransitionError(f"No transition enters status {new_status.value}")
        if new_status is JobStatus.ready and metadata is None:
            raise InvalidTransitionError("A ready job needs metadata")
        if new_status is JobStatus.failed and not error:
            raise InvalidTransitionError("A failed job needs an error")
        if new_status is not JobStatus.ready:
            metadata = None
        if new_status is not JobStatus.failed:
            error = None

        placeholders = ", ".join("?" for _ in allowed_from)
        with self._connect() as conn:
            cur = conn.execute(
                f"""
                UPDATE jobs
                SET status = ?, metadata = ?, error = ?, updated_at = ?,
                    attempts = attempts + ?
                WHERE id = ? AND status IN ({placeholders})
                """,
                (
                    new_status.value,
                    metadata.model_dump_json() if metadata else None,
                    error,
                    _utcnow().isoformat(),
                    1 if new_status is JobStatus.processing else 0,
                    job_id,
                    *(s.value for s in allowed_from),
                ),
            )
            row = conn.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)).fetchone()

        if row is None:
            logger.warning("Attempted to update missing job job_id=%s status=%s", job_id, new_status)
            raise JobNotFoundError(f"Job with ID {job_id} not found")
        if cur.rowcount != 1:
            raise InvalidTransitionError(
                f"Job {job_id} cannot move from {row['status']} to {new_status.value}"
            )
        logger.info("Updated job job_id=%s status=%s", job_id, new_status.value)
        return self._row_to_job(row)

    def list_by_owner(
        self,
        owner_id: str,
        *,
        status: JobStatus = JobStatus.ready,
        page: int = 1,
        limit: int = 10,
    ) -> tuple[list[Job], int]:
        offset = (max(page, 1) - 1) * limit
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM jobs
                WHERE owner_id = ? AND status = ?
                ORDER BY created_at DESC, rowid DESC
                LIMIT ? OFFSET ?
                """,
                (owner_id, status.value, limit, offset),
            ).fetchall()
            total = conn.execute(
                "SELECT COUNT(*) FROM jobs WHERE owner_id = ? AND status = ?",
                (owner_id, status.value),
            ).fetchone()[0]
        logger.debug(
            "Listed jobs owner_id=%s status=%s page=%d count=%d total=%d",
            owner_id,
            status.value,
            page,
            len(rows),
            total,
        )
        return [self._row_to_job(r) for r in rows], int(total)


# ----------------------------
# Job queue (SQLite, visibility timeout)
# ----------------------------


class JobQueue:
    """
    FIFO hand-off between intake and workers.

    dequeue() hides the claimed message for visibility_timeout seconds and
    hands out a fresh receipt. A message that is not acked with that receipt
    becomes visible again, so a worker that dies mid-job cannot strand it.
    """

    def __init__(
        self,
        db_file: str = "jobs.db",
        *,
        visibility_timeout: float = 120.0,
        clock: Callable[[], float] = time.time,
    ):
        self.db_file = db_file
        self.visibility_timeout = visibility_timeout
        self._clock = clock
        self._init_db()

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = sqlite3.connect(self.db_file, timeout=30)
        except sqlite3.Error as exc:
            logger.exception("Error opening queue db_file=%s", self.db_file)
            raise QueueError(str(exc)) from exc
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as exc:
            conn.rollback()
            logger.exception("Queue database error db_file=%s", self.db_file)
            raise QueueError(str(exc)) from exc
        finally:
            conn.close()

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS job_queue (
                    job_id TEXT PRIMARY KEY,
                    source_url TEXT NOT NULL,
                    owner_id TEXT,
                    enqueued_at REAL NOT NULL,
                    visible_at REAL NOT NULL,
                    deliveries INTEGER NOT NULL DEFAULT 0,
                    receipt TEXT
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_job_queue_visible ON job_queue (visible_at, enqueued_at)"
            )

    def enqueue(self, job_id: str, source_url: str, owner_id: str | None = None) -> None:
        now = self._clock()
        with self._connect() as conn:
            conn.execute(
                """
                INSERT OR IGNORE INTO job_queue
                (job_id, source_url, owner_id, enqueued_at, visible_at, deliveries)
                VALUES (?, ?, ?, ?, ?, 0)
                """,
                (job_id, source_url, owner_id, now, now),
            )
        logger.info("Enqueued job job_id=%s", job_id)

    def dequeue(self) -> QueueMessage | None:
        now = self._clock()
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute(
                """
                SELECT * FROM job_queue
                WHERE visible_at <= ?
                ORDER BY enqueued_at ASC, rowid ASC
                LIMIT 1
                """,
                (now,),
            ).fetchone()
            if row is None:
                return None
            receipt = uuid.uuid4().hex
            conn.execute(
                """
                UPDATE job_queue
                SET visible_at = ?, deliveries = deliveries + 1, receipt = ?
                WHERE job_id = ?
                """,
                (now + self.visibility_timeout, receipt, row["job_id"]),
            )
        message = QueueMessage(
            job_id=row["job_id"],
            source_url=row["source_url"],
            owner_id=row["owner_id"],
            receipt=receipt,
            deliveries=row["deliveries"] + 1,
        )
        if message.deliveries > 1:
            logger.warning(
                "Redelivering job job_id=%s deliveries=%d", message.job_id, message.deliveries
            )
        return message

    def ack(self, message: QueueMessage) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM job_queue WHERE job_id = ? AND receipt = ?",
                (message.job_id, message.receipt),
            )
        if cur.rowcount != 1:
            logger.warning(
                "Ack ignored, message was redelivered job_id=%s receipt=%s",
                message.job_id,
                message.receipt,
            )
            return False
        return True

    def size(self) -> int:
        with self._connect() as conn:
            return int(conn.execute("SELECT COUNT(*) FROM job_queue").fetchone()[0])


# ----------------------------
# Ephemeral key/value stores (dedup cache, gate tokens)
# ----------------------------


class TTLStore(Protocol):
    async def get(self, key: str) -> str | None: ...

    async def set(self, key: str, value: str, ttl: float) -> None: ...

    async def close(self) -> None: ...


class MemoryTTLStore:
    """
    In-process TTL map. Fine for a single API process.

    Expired entries are purged on every write, so the map only holds live
    keys plus whatever expired since the last set().
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._data: dict[str, tuple[str, float]] = {}
        self._expiries: list[tuple[float, str]] = []

    def __len__(self) -> int:
        return len(self._data)

    def _purge(self, now: float) -> None:
        while self._expiries and self._expiries[0][0] <= now:
            expires_at, key = heapq.heappop(self._expiries)
            entry = self._data.get(key)
            # A later set() for the same key pushed its own expiry.
            if entry is not None and entry[1] == expires_at:
                del self._data[key]

    async def get(self, key: str) -> str | None:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at <= self._clock():
            self._data.pop(key, None)
            return None
        return value

    async def set(self, key: str, value: str, ttl: float) -> None:
        now = self._clock()
        self._purge(now)
        expires_at = now + ttl
        self._data[key] = (value, expires_at)
        heapq.heappush(self._expiries, (expires_at, key))

    async def close(self) -> None:
        self._data.clear()
        self._expiries.clear()


class RedisTTLStore:
    def __init__(self, client: redis.Redis):
        self._client = client

    @classmethod
    def from_url(cls, url: str) -> "RedisTTLStore":
        return cls(redis.from_url(url, decode_responses=True))

    async def get(self, key: str) -> str | None:
        try:
            return cast("str | None", await self._client.get(key))
        except RedisError as exc:
            logger.exception("Redis get failed key=%s", key)
            raise StoreError(str(exc)) from exc

    async def set(self, key: str, value: str, ttl: float) -> None:
        try:
            await self._client.set(key, value, ex=max(1, int(ttl)))
        except RedisError as exc:
            logger.exception("Redis set failed key=%s", key)
            raise StoreError(str(exc)) from exc

    async def close(self) -> None:
        await self._client.aclose()


class DedupCache:
    """URL fingerprint -> job id, for a fixed horizon. Only successful submissions are recorded."""

    KEY_PREFIX = "meta"

    def __init__(self, backend: TTLStore, *, ttl_seconds: float = 3600):
        self.backend = backend
        self.ttl_seconds = ttl_seconds

    def _key(self, fingerprint: str) -> str:
        return f"{self.KEY_PREFIX}:{fingerprint}"

    async def lookup(self, fingerprint: str) -> str | None:
        return await self.backend.get(self._key(fingerprint))

    async def record(self, fingerprint: str, job_id: str, ttl: float | None = None) -> None:
        await self.backend.set(self._key(fingerprint), job_id, ttl or self.ttl_seconds)
        logger.debug("Recorded dedup entry fingerprint=%s job_id=%s", fingerprint[:12], job_id)


class GateStore:
    """
    Unlock tokens keyed by (owner identity, job id).

    Tokens are issued by the ad flow once the caller finished the ad step and
    are only read here; they expire on their own.
    """

    KEY_PREFIX = "ad_token"
    GUEST_IDENTITY = "guest"

    def __init__(self, backend: TTLStore, *, ttl_seconds: float = 600):
        self.backend = backend
        self.ttl_seconds = ttl_seconds

    def _key(self, owner_identity: str, job_id: str) -> str:
        return f"{self.KEY_PREFIX}:{owner_identity}:{job_id}"

    @classmethod
    def identity_for(cls, owner_id: str | None) -> str:
        return owner_id or cls.GUEST_IDENTITY

    async def issue(self, owner_identity: str, job_id: str, ttl: float | None = None) -> str:
        token = secrets.token_urlsafe(24)
        await self.backend.set(self._key(owner_identity, job_id), token, ttl or self.ttl_seconds)
        logger.info("Issued gate token identity=%s job_id=%s", owner_identity, job_id)
        return token

    async def verify(self, owner_identity: str, job_id: str, presented_token: str | None) -> bool:
        if not presented_token:
            return False
        expected = await self.backend.get(self._key(owner_identity, job_id))
        if expected is None:
            return False
        return hmac.compare_digest(expected.encode("utf-8"), presented_token.encode("utf-8"))


# ----------------------------
# Plan lookup
# ----------------------------


class PlanLookup(Protocol):
    async def is_privileged(self, owner_id: str | None) -> bool: ...


class StaticPlanLookup:
    """Plans from configuration. Anonymous callers are never privileged."""

    def __init__(self, user_plans: dict[str, str], privileged_plans: Iterable[str]):
        self.user_plans = dict(user_plans)
        self.privileged_plans = {p.lower() for p in privileged_plans}

    def plan_for(self, owner_id: str) -> str | None:
        return self.user_plans.get(owner_id)

    async def is_privileged(self, owner_id: str | None) -> bool:
        if not owner_id:
            return False
        plan = self.plan_for(owner_id)
        return plan is not None and plan.lower() in self.privileged_plans


# ----------------------------
# yt-dlp service
# ----------------------------


class Extractor(Protocol):
    async def extract(self, url: str, timeout: float) -> dict[str, Any]: ...


class YtDlpExtractor:
    """Metadata-only yt-dlp extraction, run on a bounded thread pool."""

    def __init__(
        self,
        *,
        cookie_file: str | None = None,
        max_threads: int = 10,
        user_agent: str = DEFAULT_USER_AGENT,
    ):
        self.cookie_file = cookie_file
        self.max_threads = max_threads
        self.user_agent = user_agent
        # Reuse one executor rather than creating a new pool per call.
        self._executor = ThreadPoolExecutor(max_workers=max_threads, thread_name_prefix="yt-dlp-worker")

    def build_opts(self, timeout: float) -> dict[str, Any]:
        opts: dict[str, Any] = {
            "quiet": True,
            "no_warnings": True,
            "skip_download": True,
            "noplaylist": True,
            "source_address": "0.0.0.0",
            "socket_timeout": timeout,
            "http_headers": {"User-Agent": self.user_agent},
        }
        if self.cookie_file:
            opts["cookiefile"] = self.cookie_file
        return opts

    def get_info(self, url: str, timeout: float) -> dict[str, Any]:
        opts = self.build_opts(timeout)
        logger.info("yt-dlp extract start url=%s cookie_file=%s", url, self.cookie_file)
        start = time.monotonic()
        try:
            with yt_dlp.YoutubeDL(opts) as ydl:
                info = ydl.extract_info(url, download=False)
                sanitized = ydl.sanitize_info(info)
        except yt_dlp.utils.DownloadError as exc:
            message = str(exc).removeprefix("ERROR: ").strip()
            logger.warning("yt-dlp extract failed url=%s error=%s", url, message[:200])
            raise ExtractionError(message or "Extraction failed") from exc
        if not sanitized:
            raise ExtractionError("Extractor returned no metadata")
        logger.info(
            "yt-dlp extract done url=%s elapsed_ms=%d",
            url,
            int((time.monotonic() - start) * 1000),
        )
        return cast("dict[str, Any]", sanitized)

    async def extract(self, url: str, timeout: float) -> dict[str, Any]:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, lambda: self.get_info(url, timeout))

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)


# ----------------------------
# Worker pool
# ----------------------------


def log_job_event(event: JobEvent, job: Job) -> None:
    if event is JobEvent.completed:
        formats = len(job.metadata.formats) if job.metadata else 0
        title = job.metadata.title if job.metadata else None
        logger.info("Job ready job_id=%s title=%r formats=%d", job.id, title, formats)
    else:
        logger.warning("Job failed job_id=%s error=%s", job.id, job.error)


class WorkerPool:
    """
    Fixed number of asyncio workers pulling from the JobQueue.

    Each job: claim (processing) -> extract under a hard timeout -> normalize ->
    ready, or failed with the reason. The message is acked only after the job
    reached a terminal state; anything else is redelivered by the queue.
    """

    def __init__(
        self,
        store: JobStore,
        queue: JobQueue,
        extractor: Extractor,
        config: WorkerConfig,
        *,
        target_ext: str = "mp4",
        premium_threshold: int = 720,
    ):
        self.store = store
        self.queue = queue
        self.extractor = extractor
        self.config = config
        self.target_ext = target_ext
        self.premium_threshold = premium_threshold
        self._observers: list[JobObserver] = []
        self._tasks: list[asyncio.Task[None]] = []
        self._wakeup = asyncio.Event()
        self._stopping = False

    @property
    def running(self) -> int:
        return sum(1 for t in self._tasks if not t.done())

    def subscribe(self, observer: JobObserver) -> None:
        self._observers.append(observer)

    def notify(self) -> None:
        self._wakeup.set()

    async def start(self) -> None:
        if self._tasks:
            return
        self._stopping = False
        self._tasks = [
            asyncio.create_task(self._worker_loop(i), name=f"resolver-worker-{i}")
            for i in range(self.config.max_workers)
        ]
        logger.info("Worker pool started workers=%d", len(self._tasks))

    async def stop(self) -> None:
        self._stopping = True
        self._wakeup.set()
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("Worker pool stopped")

    async def _worker_loop(self, index: int) -> None:
        while not self._stopping:
            # Cleared before reading the queue so a notify() during the read is kept.
            self._wakeup.clear()
            try:
                processed = await self.run_once()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Worker loop error worker=%d", index)
                processed = False
            if processed:
                continue
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=self.config.poll_interval)
            except asyncio.TimeoutError:
                pass

    async def run_once(self) -> bool:
        """Process one visible message, if any. Returns whether one was processed."""
        message = self.queue.dequeue()
        if message is None:
            return False
        await self.process_message(message)
        return True

    async def process_message(self, message: QueueMessage) -> Job | None:
        job_id = message.job_id
        logger.info("Process job start job_id=%s delivery=%d", job_id, message.deliveries)
        start = time.monotonic()

        if message.deliveries > self.config.max_deliveries:
            logger.error(
                "Dead-lettering job job_id=%s deliveries=%d", job_id, message.deliveries
            )
            job = self._fail(job_id, "Job abandoned after repeated worker crashes")
            self.queue.ack(message)
            if job is not None and job.status is JobStatus.failed:
                await self._emit(JobEvent.failed, job)
            return job

        try:
            self.store.transition(job_id, JobStatus.processing)
        except JobNotFoundError:
            logger.warning("Dropping message for unknown job job_id=%s", job_id)
            self.queue.ack(message)
            return None
        except InvalidTransitionError:
            # Finished on an earlier delivery whose ack was lost.
            logger.info("Job already terminal, acking job_id=%s", job_id)
            self.queue.ack(message)
            return self.store.get(job_id)

        try:
            metadata = await self._extract(message.source_url)
        except ExtractionError as exc:
            job = self._fail(job_id, str(exc))
            event = JobEvent.failed
        else:
            job = self.store.transition(job_id, JobStatus.ready, metadata=metadata)
            event = JobEvent.completed

        self.queue.ack(message)
        logger.info(
            "Process job done job_id=%s status=%s elapsed_ms=%d",
            job_id,
            job.status.value if job else None,
            int((time.monotonic() - start) * 1000),
        )
        if job is not None:
            await self._emit(event, job)
        return job

    async def _extract(self, url: str) -> VideoMetadata:
        timeout = self.config.extract_timeout
        try:
            # Includes time spent waiting for a free extractor thread.
            raw = await asyncio.wait_for(self.extractor.extract(url, timeout), timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise ExtractionError(f"Extraction timed out after {timeout:g}s") from exc
        except ExtractionError:
            raise
        except Exception as exc:
            logger.exception("Extractor raised url=%s", url)
            raise ExtractionError(str(exc) or exc.__class__.__name__) from exc
        try:
            return normalize_metadata(
                raw, target_ext=self.target_ext, premium_threshold=self.premium_threshold
            )
        except ExtractionError:
            raise
        except Exception as exc:
            logger.exception("Normalization failed url=%s", url)
            raise ExtractionError(f"Malformed extractor output: {exc}") from exc

    def _fail(self, job_id: str, reason: str) -> Job | None:
        try:
            return self.store.transition(job_id, JobStatus.failed, error=reason)
        except JobNotFoundError:
            logger.warning("Cannot fail missing job job_id=%s", job_id)
            return None
        except InvalidTransitionError:
            logger.info("Job already terminal, not failing job_id=%s", job_id)
            return self.store.get(job_id)

    async def _emit(self, event: JobEvent, job: Job) -> None:
        for observer in self._observers:
            try:
                result = observer(event, job)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Job observer failed event=%s job_id=%s", event.value, job.id)


# ----------------------------
# Resolver service (intake / query)
# ----------------------------

DOWNLOADS_PREFIX = "/downloads"
UNLOCK_PATH = f"{DOWNLOADS_PREFIX}/get-link"


def status_url(job_id: str) -> str:
    return f"{DOWNLOADS_PREFIX}/status/{job_id}"


def mask_job(job: Job) -> dict[str, Any]:
    """Job view for callers who still have to unlock: no direct links."""
    data = job.model_dump(mode="json")
    data["download_url"] = None
    if data.get("metadata"):
        for variant in data["metadata"]["formats"]:
            variant["source_link"] = None
    data["requires_ad"] = True
    data["unlock_url"] = UNLOCK_PATH
    data["job_id"] = job.id
    return data


class ResolverService:
    """Wires the store, queue, caches and worker pool together and serves the API operations."""

    def __init__(
        self,
        *,
        store: JobStore,
        queue: JobQueue,
        dedup: DedupCache,
        gates: GateStore,
        plans: PlanLookup,
        pool: WorkerPool,
    ):
        self.store = store
        self.queue = queue
        self.dedup = dedup
        self.gates = gates
        self.plans = plans
        self.pool = pool

    async def start(self) -> None:
        await self.pool.start()

    async def stop(self) -> None:
        await self.pool.stop()
        close = getattr(self.pool.extractor, "close", None)
        if callable(close):
            close()
        for backend in {id(b): b for b in (self.dedup.backend, self.gates.backend)}.values():
            await backend.close()

    async def submit(self, url: str, owner_id: str | None) -> tuple[Job, bool]:
        """Return (job, cached). cached is True when an identical live submission was reused."""
        source_url = validate_source_url(url)
        fingerprint = fingerprint_url(source_url)

        existing_id = await self.dedup.lookup(fingerprint)
        if existing_id:
            existing = self.store.get(existing_id)
            if existing is not None and existing.status is not JobStatus.failed:
                logger.info(
                    "Deduped submission existing_job_id=%s status=%s url=%s",
                    existing.id,
                    existing.status.value,
                    source_url,
                )
                return existing, True
            logger.info("Ignoring stale dedup entry job_id=%s", existing_id)

        job = self.store.create(owner_id, source_url, fingerprint)
        try:
            self.queue.enqueue(job.id, source_url, owner_id)
        except QueueError:
            logger.error("Enqueue failed, failing job job_id=%s", job.id)
            self.store.transition(job.id, JobStatus.failed, error="Job could not be queued")
            raise

        await self.dedup.record(fingerprint, job.id)
        self.pool.notify()
        return job, False

    def get_job(self, job_id: str) -> Job:
        job = self.store.get(job_id)
        if job is None:
            logger.info("Job not found job_id=%s", job_id)
            raise JobNotFoundError(f"Job with ID {job_id} not found")
        return job

    async def status(self, job_id: str, owner_id: str | None) -> dict[str, Any]:
        job = self.get_job(job_id)
        if job.status is not JobStatus.ready:
            return job.model_dump(mode="json")
        if await self.plans.is_privileged(owner_id):
            data = job.model_dump(mode="json")
            data["requires_ad"] = False
            return data
        return mask_job(job)

    async def unlock(self, job_id: str, ad_token: str | None, owner_id: str | None) -> dict[str, Any]:
        job = self.get_job(job_id)
        identity = GateStore.identity_for(owner_id)
        if not await self.gates.verify(identity, job.id, ad_token):
            logger.warning("Gate verification failed job_id=%s identity=%s", job.id, identity)
            raise VerificationFailure()
        if job.status is not JobStatus.ready or job.metadata is None:
            raise InvalidRequestError(f"Job is not ready yet. Current status: {job.status.value}")
        logger.info("Unlocked job job_id=%s identity=%s", job.id, identity)
        return {
            "download_url": job.download_url,
            "metadata": job.metadata.model_dump(mode="json"),
        }

    async def history(
        self, owner_id: str | None, *, page: int = 1, limit: int = 10
    ) -> tuple[list[dict[str, Any]], int]:
        if not owner_id:
            raise AuthenticationRequiredError("Authentication required")
        jobs, total = self.store.list_by_owner(
            owner_id, status=JobStatus.ready, page=page, limit=limit
        )
        privileged = await self.plans.is_privileged(owner_id)
        items = []
        for job in jobs:
            view = job.model_dump(mode="json") if privileged else mask_job(job)
            items.append(
                {
                    "id": job.id,
                    "source_url": job.source_url,
                    "status": job.status.value,
                    "metadata": view["metadata"],
                    "created_at": view["created_at"],
                }
            )
        return items, total


def build_service(
    resolver_config: ResolverConfig | None = None,
    worker_config: WorkerConfig | None = None,
    plan_config: PlanConfig | None = None,
    cookie_config: CookieConfig | None = None,
) -> ResolverService:
    resolver_config = resolver_config or ResolverConfig.from_env()
    worker_config = worker_config or WorkerConfig.from_env()
    plan_config = plan_config or PlanConfig.from_env()
    cookie_config = cookie_config or CookieConfig.from_env()

    store = JobStore(resolver_config.db_file, retention_hours=resolver_config.job_retention_hours)
    queue = JobQueue(resolver_config.db_file, visibility_timeout=worker_config.visibility_timeout)
    backend: TTLStore
    if resolver_config.redis_url:
        backend = RedisTTLStore.from_url(resolver_config.redis_url)
    else:
        backend = MemoryTTLStore()
    extractor = YtDlpExtractor(
        cookie_file=cookie_config.cookies_file,
        max_threads=worker_config.extractor_threads or worker_config.max_workers * 2,
    )
    pool = WorkerPool(
        store,
        queue,
        extractor,
        worker_config,
        target_ext=resolver_config.target_ext,
        premium_threshold=resolver_config.premium_height_threshold,
    )
    pool.subscribe(log_job_event)
    return ResolverService(
        store=store,
        queue=queue,
        dedup=DedupCache(backend, ttl_seconds=resolver_config.dedup_ttl_seconds),
        gates=GateStore(backend, ttl_seconds=resolver_config.gate_token_ttl_seconds),
        plans=StaticPlanLookup(plan_config.user_plans, plan_config.privileged_plans),
        pool=pool,
    )


# ----------------------------
# FastAPI
# ----------------------------


def get_service(request: Request) -> ResolverService:
    return cast(ResolverService, request.app.state.service)


def get_owner_id(request: Request) -> str | None:
    value = request.headers.get(auth_config.user_header_name)
    if value is None:
        return None
    return value.strip() or None


async def resolver_error_handler(request: Request, exc: Exception) -> JSONResponse:
    err = cast(ResolverError, exc)
    if err.status_code >= 500:
        logger.error(
            "Request failed method=%s path=%s error=%s: %s",
            request.method,
            request.url.path,
            err.__class__.__name__,
            err,
        )
    content: dict[str, Any] = {"detail": err.detail}
    if err.code:
        content["code"] = err.code
    return JSONResponse(status_code=err.status_code, content=content)


async def request_logging_middleware(request: Request, call_next):
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    token = _request_id_ctx.set(request_id)
    start = time.monotonic()
    try:
        logger.info("Request start method=%s path=%s", request.method, request.url.path)
        response = await call_next(request)
        elapsed_ms = int((time.monotonic() - start) * 1000)
        logger.info(
            "Request end method=%s path=%s status=%d elapsed_ms=%d",
            request.method,
            request.url.path,
            response.status_code,
            elapsed_ms,
        )
        response.headers["X-Request-ID"] = request_id
        return response
    finally:
        _request_id_ctx.reset(token)


router = APIRouter(prefix=DOWNLOADS_PREFIX)


@router.post("", response_class=JSONResponse)
async def api_submit(
    request: SubmitRequest,
    service: ResolverService = Depends(get_service),
    owner_id: str | None = Depends(get_owner_id),
):
    job, cached = await service.submit(request.url, owner_id)
    return {
        "status": "success",
        "job_id": job.id,
        "status_url": status_url(job.id),
        "cached": cached,
    }


@router.get("/status/{job_id}", response_class=JSONResponse)
async def api_status(
    job_id: str,
    service: ResolverService = Depends(get_service),
    owner_id: str | None = Depends(get_owner_id),
):
    return {"status": "success", "data": await service.status(job_id, owner_id)}


@router.post("/get-link", response_class=JSONResponse)
async def api_unlock(
    request: UnlockRequest,
    service: ResolverService = Depends(get_service),
    owner_id: str | None = Depends(get_owner_id),
):
    return {
        "status": "success",
        "data": await service.unlock(request.job_id, request.ad_token, owner_id),
    }


@router.get("/history", response_class=JSONResponse)
async def api_history(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    service: ResolverService = Depends(get_service),
    owner_id: str | None = Depends(get_owner_id),
):
    items, total = await service.history(owner_id, page=page, limit=limit)
    return {
        "status": "success",
        "data": items,
        "pagination": {"total": total, "page": page, "limit": limit},
    }


async def api_health(service: ResolverService = Depends(get_service)):
    return {"status": "ok", "workers": service.pool.running, "queued": service.queue.size()}


def create_app(service: ResolverService | None = None) -> FastAPI:
    """
    Build the API. A prepared service is used as-is (and its workers are left
    to the caller); otherwise one is built from the environment on startup.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        svc = getattr(app.state, "service", None) or build_service()
        app.state.service = svc
        await svc.start()
        try:
            yield
        finally:
            await svc.stop()

    app = FastAPI(
        title="Media Resolver API",
        description="Resolve media URLs into downloadable formats using yt-dlp",
        dependencies=[Depends(require_api_key)],
        lifespan=lifespan,
    )
    if service is not None:
        app.state.service = service
    app.add_exception_handler(ResolverError, resolver_error_handler)
    app.middleware("http")(request_logging_middleware)
    app.include_router(router)
    app.add_api_route("/health", api_health, methods=["GET"], response_class=JSONResponse)
    return app


app = create_app()


def start_api() -> None:
    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", "8000"))
    logger.info("Starting uvicorn host=%s port=%s", host, port)
    uvicorn.run(app, host=host, port=port)


if __name__ == "__main__":
    logger.info("Starting media resolver API server...")
    start_api()
