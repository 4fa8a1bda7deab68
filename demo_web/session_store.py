"""
Session stores: opaque session id -> SessionRecord, with TTL.
Memory (single instance, not crash-safe), Redis and SQL database (shared across instances).
Every backend makes take_pkce atomic so a verifier can be claimed by exactly one callback.
"""
import json
import logging
import math
import threading
import time
from abc import ABC, abstractmethod

import redis
from sqlalchemy import delete, update
from sqlalchemy.exc import SQLAlchemyError

from demo_web.config import STORE_DATABASE, STORE_MEMORY, STORE_REDIS, Settings
from demo_web.database import init_db, make_engine, make_sessionmaker
from demo_web.errors import ConfigurationError, SessionStoreUnavailable
from demo_web.models import SessionRow
from demo_web.session import PkceCodes, SessionRecord, SessionState

logger = logging.getLogger(__name__)

# Backend errors are retried this many times before SessionStoreUnavailable
STORE_ATTEMPTS = 3
# Minimum seconds between expired-row sweeps
SWEEP_INTERVAL = 60


def _encode(record: SessionRecord) -> str:
    return json.dumps(record.to_dict())


def _decode(raw: str | bytes | None) -> SessionRecord | None:
    if raw is None:
        return None
    try:
        return SessionRecord.from_dict(json.loads(raw))
    except (ValueError, KeyError, TypeError) as e:
        # Corrupted record: unreadable means anonymous
        logger.warning("Discarding unreadable session record: %s", e)
        return None


def _ttl_seconds(record: SessionRecord, now: float | None = None) -> int:
    now = time.time() if now is None else now
    return max(1, math.ceil(record.expires_at - now))


class SessionStore(ABC):
    """get/set/destroy with TTL, plus the atomic verifier claim used by the login callback."""

    backend_errors: tuple[type[BaseException], ...] = ()

    def _call(self, what: str, fn, *args):
        last_error = None
        for attempt in range(1, STORE_ATTEMPTS + 1):
            try:
                return fn(*args)
            except self.backend_errors as e:
                last_error = e
                logger.warning("Session store %s failed (attempt %d/%d): %s", what, attempt, STORE_ATTEMPTS, e)
        raise SessionStoreUnavailable(f"session store {what} failed") from last_error

    def get(self, session_id: str) -> SessionRecord | None:
        """Live record for session_id, or None if missing or expired."""
        record = self._call("get", self._get, session_id)
        if record is None or record.expired():
            return None
        return record

    def set(self, record: SessionRecord) -> None:
        self._call("set", self._set, record)

    def destroy(self, session_id: str) -> None:
        self._call("destroy", self._destroy, session_id)

    def take_pkce(self, session_id: str, state: str) -> PkceCodes | None:
        """
        Atomically claim the pending login's PKCE codes: if the record is pending for `state`,
        erase the verifier (record becomes anonymous) and return the codes. Otherwise None.
        """
        return self._call("take_pkce", self._take_pkce, session_id, state)

    def verify_connection(self) -> None:
        """Assert the backend is reachable (startup)."""

    def close(self) -> None:
        pass

    @abstractmethod
    def _get(self, session_id: str) -> SessionRecord | None: ...

    @abstractmethod
    def _set(self, record: SessionRecord) -> None: ...

    @abstractmethod
    def _destroy(self, session_id: str) -> None: ...

    @abstractmethod
    def _take_pkce(self, session_id: str, state: str) -> PkceCodes | None: ...


class MemorySessionStore(SessionStore):
    """In-process dict guarded by one lock. Sessions are lost on restart and not shared."""

    def __init__(self):
        self._records: dict[str, SessionRecord] = {}
        self._lock = threading.Lock()

    def _get(self, session_id):
        with self._lock:
            return self._records.get(session_id)

    def _set(self, record):
        with self._lock:
            self._records[record.session_id] = record
            self._clean_expired()

    def _destroy(self, session_id):
        with self._lock:
            self._records.pop(session_id, None)

    def _take_pkce(self, session_id, state):
        with self._lock:
            record = self._records.get(session_id)
            if record is None or record.expired() or not record.awaiting(state):
                return None
            self._records[session_id] = record.to_anonymous()
            return record.pkce

    def _clean_expired(self) -> None:
        now = time.time()
        expired = [sid for sid, r in self._records.items() if r.expired(now)]
        for sid in expired:
            del self._records[sid]

    def __len__(self) -> int:
        return len(self._records)


class RedisSessionStore(SessionStore):
    """Sessions as JSON strings under `session:<id>` with EX TTL; claims use WATCH/MULTI."""

    backend_errors = (redis.RedisError,)
    KEY_PREFIX = "session:"

    def __init__(self, client: redis.Redis):
        self.client = client

    @classmethod
    def from_url(cls, url: str, *, socket_timeout: float = 5.0) -> "RedisSessionStore":
        return cls(
            redis.Redis.from_url(
                url,
                decode_responses=True,
                socket_timeout=socket_timeout,
                socket_connect_timeout=socket_timeout,
            )
        )

    def _key(self, session_id: str) -> str:
        return f"{self.KEY_PREFIX}{session_id}"

    def _get(self, session_id):
        return _decode(self.client.get(self._key(session_id)))

    def _set(self, record):
        self.client.set(self._key(record.session_id), _encode(record), ex=_ttl_seconds(record))

    def _destroy(self, session_id):
        self.client.delete(self._key(session_id))

    def _take_pkce(self, session_id, state):
        key = self._key(session_id)

        def claim(pipe):
            # Watch mode: reads run immediately; a concurrent write aborts EXEC and we re-read
            record = _decode(pipe.get(key))
            if record is None or record.expired() or not record.awaiting(state):
                return None
            consumed = record.to_anonymous()
            pipe.multi()
            pipe.set(key, _encode(consumed), ex=_ttl_seconds(consumed))
            return record.pkce

        return self.client.transaction(claim, key, value_from_callable=True)

    def verify_connection(self) -> None:
        self._call("ping", self.client.ping)

    def close(self) -> None:
        self.client.close()


class DatabaseSessionStore(SessionStore):
    """Sessions in a SQL table; claims are a conditional UPDATE checked by rowcount."""

    backend_errors = (SQLAlchemyError,)

    def __init__(self, engine):
        self.engine = engine
        self.SessionLocal = make_sessionmaker(engine)
        self._next_sweep = 0.0

    @classmethod
    def from_url(cls, url: str) -> "DatabaseSessionStore":
        return cls(make_engine(url))

    def _get(self, session_id):
        with self.SessionLocal() as db:
            row = db.get(SessionRow, session_id)
            return _decode(row.data) if row is not None else None

    def _set(self, record):
        with self.SessionLocal() as db:
            db.merge(
                SessionRow(
                    session_id=record.session_id,
                    state=record.state.value,
                    login_state=record.pkce.state if record.pkce else None,
                    data=_encode(record),
                    expires_at=record.expires_at,
                )
            )
            db.commit()
        self._sweep()

    def _destroy(self, session_id):
        with self.SessionLocal() as db:
            db.execute(delete(SessionRow).where(SessionRow.session_id == session_id))
            db.commit()

    def _take_pkce(self, session_id, state):
        with self.SessionLocal() as db:
            row = db.get(SessionRow, session_id)
            record = _decode(row.data) if row is not None else None
            if record is None or record.expired() or not record.awaiting(state):
                return None
            consumed = record.to_anonymous()
            result = db.execute(
                update(SessionRow)
                .where(
                    SessionRow.session_id == session_id,
                    SessionRow.state == SessionState.PENDING.value,
                    SessionRow.login_state == state,
                )
                .values(state=consumed.state.value, login_state=None, data=_encode(consumed))
            )
            db.commit()
            if result.rowcount != 1:
                # Another request claimed it between our read and update
                return None
            return record.pkce

    def _sweep(self) -> None:
        now = time.time()
        if now < self._next_sweep:
            return
        self._next_sweep = now + SWEEP_INTERVAL
        with self.SessionLocal() as db:
            db.execute(delete(SessionRow).where(SessionRow.expires_at < now))
            db.commit()

    def verify_connection(self) -> None:
        self._call("init", init_db, self.engine)

    def close(self) -> None:
        self.engine.dispose()


def build_session_store(settings: Settings) -> SessionStore:
    """Backend selected by settings.session_store."""
    if settings.session_store == STORE_MEMORY:
        logger.info("Session store: in-memory (sessions will not persist or span instances)")
        return MemorySessionStore()
    if settings.session_store == STORE_REDIS:
        if not settings.redis_url:
            raise ConfigurationError("Redis session store selected but no Redis target configured")
        logger.info("Session store: Redis")
        return RedisSessionStore.from_url(settings.redis_url)
    if settings.session_store == STORE_DATABASE:
        logger.info("Session store: database")
        return DatabaseSessionStore.from_url(settings.session_database_url)
    raise ConfigurationError(f"Unknown session store {settings.session_store!r}")
