"""Durable per-hostname record of the last certificate issuance attempt.

Records survive restarts so that throttling holds across them. A record is
created on the first attempt and afterwards only overwritten; there is no
delete operation.
"""

import logging
import os
import re
import sqlite3
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Iterator, Optional

import redis

from src.shared.config_schema import AttemptBackend, ServerConfig
from src.shared.errors import StorageFailure
from src.shared.redis_client import RedisConnectionError, get_redis_connection

logger = logging.getLogger(__name__)

_HOST_CHARS = re.compile(r"^[a-z0-9._-]+$")
REDIS_KEY_PREFIX = "mta_sts:host_attempt:"

SCHEMA = """
CREATE TABLE IF NOT EXISTS host_attempts (
    hostname TEXT PRIMARY KEY,
    attempted_at REAL NOT NULL
);
"""


def sanitize_hostname(hostname: str) -> str:
    """
    Normalize ``hostname`` for use as a storage key.

    Lowercases and drops a single trailing dot. Anything that could escape
    the storage namespace (path separators, ``..``, NUL) or is not a plain
    DNS name is rejected with ``ValueError``.
    """
    if not isinstance(hostname, str):
        raise ValueError("hostname must be a string")
    name = hostname.strip().lower()
    if name.endswith("."):
        name = name[:-1]
    if not name or len(name) > 253:
        raise ValueError(f"invalid hostname length: {hostname!r}")
    if "/" in name or "\\" in name or "\x00" in name or ".." in name:
        raise ValueError(f"hostname contains path characters: {hostname!r}")
    if name.startswith(".") or not _HOST_CHARS.match(name):
        raise ValueError(f"hostname contains invalid characters: {hostname!r}")
    if any(len(label) > 63 for label in name.split(".")):
        raise ValueError(f"hostname label too long: {hostname!r}")
    return name


class AttemptStore(ABC):
    """Hostname -> last-attempt timestamp (POSIX seconds)."""

    @abstractmethod
    def get_last_attempt(self, hostname: str) -> Optional[float]:
        """Return the last attempt time, or ``None`` if never recorded."""

    @abstractmethod
    def record_attempt(self, hostname: str, now: float) -> None:
        """Create or overwrite the record for ``hostname`` with ``now``."""


class FileAttemptStore(AttemptStore):
    """One empty file per hostname; its mtime is the attempt time."""

    def __init__(self, directory: str):
        self.directory = directory

    def _path(self, hostname: str) -> str:
        return os.path.join(self.directory, sanitize_hostname(hostname))

    def get_last_attempt(self, hostname: str) -> Optional[float]:
        path = self._path(hostname)
        try:
            return os.stat(path).st_mtime
        except FileNotFoundError:
            return None
        except OSError as e:
            raise StorageFailure(f"cannot stat {path}: {e}") from e

    def record_attempt(self, hostname: str, now: float) -> None:
        path = self._path(hostname)
        try:
            os.makedirs(self.directory, mode=0o700, exist_ok=True)
            with open(path, "a", encoding="utf-8"):
                pass
            os.utime(path, (now, now))
        except OSError as e:
            raise StorageFailure(f"cannot record attempt at {path}: {e}") from e


class SqliteAttemptStore(AttemptStore):
    """Attempt records in a single SQLite table."""

    def __init__(self, db_path: str, timeout: float = 5.0):
        self.db_path = db_path
        self.timeout = timeout

    @contextmanager
    def _conn(self) -> Iterator[sqlite3.Connection]:
        try:
            directory = os.path.dirname(self.db_path)
            if directory:
                os.makedirs(directory, mode=0o700, exist_ok=True)
            conn = sqlite3.connect(self.db_path, timeout=self.timeout)
        except (OSError, sqlite3.Error) as e:
            raise StorageFailure(f"cannot open {self.db_path}: {e}") from e
        try:
            conn.executescript(SCHEMA)
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            raise StorageFailure(f"sqlite error on {self.db_path}: {e}") from e
        finally:
            conn.close()

    def get_last_attempt(self, hostname: str) -> Optional[float]:
        name = sanitize_hostname(hostname)
        with self._conn() as conn:
            row = conn.execute(
                "SELECT attempted_at FROM host_attempts WHERE hostname = ?", (name,)
            ).fetchone()
        return None if row is None else float(row[0])

    def record_attempt(self, hostname: str, now: float) -> None:
        name = sanitize_hostname(hostname)
        with self._conn() as conn:
            conn.execute(
                "INSERT INTO host_attempts (hostname, attempted_at) VALUES (?, ?) "
                "ON CONFLICT(hostname) DO UPDATE SET attempted_at = excluded.attempted_at",
                (name, now),
            )


class RedisAttemptStore(AttemptStore):
    """Attempt records as plain Redis string keys."""

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db_number: int = 0,
        password_file: Optional[str] = None,
        client: Optional[redis.Redis] = None,
    ):
        self.host = host
        self.port = port
        self.db_number = db_number
        self.password_file = password_file
        self._client = client

    def _redis(self) -> redis.Redis:
        if self._client is None:
            try:
                self._client = get_redis_connection(
                    host=self.host,
                    port=self.port,
                    db_number=self.db_number,
                    password_file=self.password_file,
                )
            except RedisConnectionError as e:
                raise StorageFailure(str(e)) from e
        return self._client

    def get_last_attempt(self, hostname: str) -> Optional[float]:
        key = f"{REDIS_KEY_PREFIX}{sanitize_hostname(hostname)}"
        try:
            value = self._redis().get(key)
        except redis.RedisError as e:
            raise StorageFailure(f"Failed to read {key} from Redis: {e}") from e
        if value is None:
            return None
        try:
            return float(value)
        except (TypeError, ValueError) as e:
            raise StorageFailure(f"Corrupt attempt record {key}: {value!r}") from e

    def record_attempt(self, hostname: str, now: float) -> None:
        key = f"{REDIS_KEY_PREFIX}{sanitize_hostname(hostname)}"
        try:
            self._redis().set(key, repr(float(now)))
        except redis.RedisError as e:
            raise StorageFailure(f"Failed to write {key} to Redis: {e}") from e


def create_attempt_store(config: ServerConfig) -> AttemptStore:
    """Build the attempt store selected by ``config``."""
    store_config = config.attempt_store
    if store_config.backend is AttemptBackend.REDIS:
        logger.info(
            "Recording issuance attempts in Redis at %s:%s/%s",
            store_config.redis_host,
            store_config.redis_port,
            store_config.redis_db,
        )
        return RedisAttemptStore(
            host=store_config.redis_host,
            port=store_config.redis_port,
            db_number=store_config.redis_db,
            password_file=store_config.redis_password_file,
        )
    path = config.attempt_store_path()
    logger.info("Recording issuance attempts in %s (%s)", path, store_config.backend.value)
    if store_config.backend is AttemptBackend.SQLITE:
        return SqliteAttemptStore(path)
    return FileAttemptStore(path)
