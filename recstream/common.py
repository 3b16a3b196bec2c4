"""
Shared types/utilities for the processor, worker and HTTP app.
"""

# recstream/common.py
import os
import re
import time
from dataclasses import dataclass
from enum import Enum
from functools import lru_cache
from typing import Optional

import redis
from redis.retry import Retry
from redis.backoff import ExponentialBackoff
from huey import RedisHuey


def time_now() -> float:
    return time.time()


def as_bool(x, default=False) -> bool:
    if x is None: return default
    s = str(x).strip().lower()
    return s in ("1", "true", "yes", "on", "y", "t")


def as_int(x, default=0) -> int:
    try: return int(x)
    except (TypeError, ValueError): return default


# ----------------- Configuration -----------------

ENV = os.environ.get

REDIS_HOST = ENV("REDIS_HOST", "localhost")
REDIS_PORT = as_int(ENV("REDIS_PORT"), 6379)
REDIS_DB_TASKS = as_int(ENV("REDIS_DB_TASKS"), 0)  # Huey broker
REDIS_DB_DATA  = as_int(ENV("REDIS_DB_DATA"),  1)  # Job ledger + session registry

# Filesystem layout
HLS_BASE_DIR  = ENV("HLS_BASE_DIR", "/var/lib/recstream/hls")
RAW_CHUNK_EXT = ENV("RAW_CHUNK_EXT", "webm")

# Transcoding
FFMPEG_BIN            = ENV("FFMPEG_BIN", "ffmpeg")
TRANSCODE_TIMEOUT_SEC = as_int(ENV("TRANSCODE_TIMEOUT_SEC"), 120)

# Sessions
SESSION_TOMBSTONE_TTL_SEC = as_int(ENV("SESSION_TOMBSTONE_TTL_SEC"), 7 * 24 * 3600)

# Worker
WORKERS        = as_int(ENV("WORKERS"), 2)
HUEY_IMMEDIATE = as_bool(ENV("HUEY_IMMEDIATE"), False)


@dataclass(frozen=True)
class QueuePolicy:
    """
    Retry/backoff/retention policy for chunk jobs.

    `attempts` counts the first run. Backoff is exponential:
    the delay before attempt n+1 is backoff_seconds * 2**(n-1).
    """
    attempts: int = 3
    backoff_seconds: int = 5
    keep_completed_sec: int = 24 * 3600
    keep_completed_count: int = 100
    keep_failed_sec: int = 7 * 24 * 3600

    def retry_delay(self, attempt: int) -> int:
        """Delay (seconds) to wait after failed attempt number `attempt` (1-based)."""
        return self.backoff_seconds * (2 ** (max(1, attempt) - 1))

    def should_retry(self, attempt: int) -> bool:
        return attempt < self.attempts


DEFAULT_POLICY = QueuePolicy()


# ----- Clients -----

@lru_cache(maxsize=None)
def get_redis() -> redis.Redis:
    return redis.Redis(
        host=REDIS_HOST,
        port=REDIS_PORT,
        db=REDIS_DB_DATA,
        decode_responses=True,
        socket_keepalive=True,
        socket_timeout=5,
        socket_connect_timeout=5,
        health_check_interval=30,
        retry_on_timeout=True,
        retry=Retry(ExponentialBackoff(cap=10, base=1), retries=16),
    )


@lru_cache(maxsize=None)
def get_huey() -> RedisHuey:
    return RedisHuey(
        'recstream',
        host=REDIS_HOST,
        port=REDIS_PORT,
        db=REDIS_DB_TASKS,
        immediate=HUEY_IMMEDIATE,
        retry_on_timeout=True,
        retry=Retry(ExponentialBackoff(cap=10, base=1), retries=8),
    )


"""
String-backed enums that are safe to persist to Redis/JSON.
"""

class _ParseMixin:
    @classmethod
    def parse(cls, value):
        """
        lenient ↓
        * Accepts wrong-casing, surrounding whitespace, even an existing member.
        * Raise ValueError if unknown value.
        """
        if isinstance(value, cls):
            return value
        try:
            return cls[str(value).strip().upper()]
        except (KeyError, AttributeError):
            raise ValueError(f"Unknown {cls.__name__}: {value!r}")


class Status(_ParseMixin, str, Enum):
    """Job lifecycle in the ledger."""
    QUEUED    = 'QUEUED'
    ACTIVE    = 'ACTIVE'
    RETRYING  = 'RETRYING'
    COMPLETED = 'COMPLETED'
    FAILED    = 'FAILED'
    CANCELLED = 'CANCELLED'

    @property
    def is_terminal(self) -> bool:
        return self in (Status.COMPLETED, Status.FAILED, Status.CANCELLED)


class SessionState(_ParseMixin, str, Enum):
    RECORDING = 'RECORDING'
    FINALIZED = 'FINALIZED'
    RECLAIMED = 'RECLAIMED'


class SegmentStatus(_ParseMixin, str, Enum):
    PENDING    = 'PENDING'
    TRANSCODED = 'TRANSCODED'
    APPENDED   = 'APPENDED'
    FAILED     = 'FAILED'


# ---------------- Errors ----------------

class RecstreamError(Exception):
    """Base class for pipeline errors."""


class InvalidSessionId(RecstreamError, ValueError):
    pass


class SessionClosedError(RecstreamError):
    """Session was finalized, reclaimed or its directory is gone."""

    def __init__(self, session_id: str, reason: str):
        super().__init__(f"session {session_id} is closed: {reason}")
        self.session_id = session_id
        self.reason = reason


class ChunkNotFoundError(RecstreamError):
    pass


class TranscodeError(RecstreamError):
    def __init__(self, message: str, returncode: Optional[int] = None, stderr: str = ''):
        detail = f"{message} (rc={returncode})" if returncode is not None else message
        if stderr:
            detail = f"{detail}: {stderr}"
        super().__init__(detail)
        self.returncode = returncode
        self.stderr = stderr


class PlaylistWriteError(RecstreamError):
    pass


_SESSION_ID_RE = re.compile(r'^[A-Za-z0-9_-]{1,128}$')

def validate_session_id(session_id: str) -> str:
    if not isinstance(session_id, str) or not _SESSION_ID_RE.match(session_id):
        raise InvalidSessionId(f"Invalid session id: {session_id!r}")
    return session_id


# ---------------- Logging setup (shared) ----------------
import logging, socket, sys

_HOST = socket.gethostname()

class _HostnameFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.hostname = _HOST
        return True

def _coerce_level(level) -> int:
    if isinstance(level, int):
        return level
    env = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    return getattr(logging, env, logging.INFO)

def get_logging(
    app_name: str = "recstream",
    level=None,
    use_utc: bool = False,
    quiet_libs: bool = True,
) -> logging.Logger:
    """
    Idempotent root logging setup to stdout with a consistent format.
    Call this once near process startup, then use `logging.getLogger(__name__)` or
    the returned logger.

    Env overrides:
      - LOG_LEVEL=DEBUG|INFO|WARNING|ERROR
    """
    root = logging.getLogger()

    if not root.handlers:
        # format: time level host logger [pid] message
        fmt = "%(asctime)s %(levelname)s %(hostname)s %(name)s [%(process)d] %(message)s"
        datefmt = "%Y-%m-%dT%H:%M:%S%z"
        handler = logging.StreamHandler(sys.stdout)
        handler.addFilter(_HostnameFilter())
        formatter = logging.Formatter(fmt=fmt, datefmt=datefmt)
        if use_utc:
            formatter.converter = time.gmtime  # type: ignore[attr-defined]
        handler.setFormatter(formatter)

        root.addHandler(handler)
        root.setLevel(_coerce_level(level))

        if quiet_libs:
            logging.getLogger("urllib3").setLevel(logging.WARNING)
            logging.getLogger("werkzeug").setLevel(logging.WARNING)
            logging.getLogger("huey").setLevel(logging.INFO)

    else:
        # even if already configured, honor explicit level override
        if level is not None:
            root.setLevel(_coerce_level(level))

    return logging.getLogger(app_name)
