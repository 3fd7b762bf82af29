"""appointment_etl.progress

Progress store for background ingestion runs.

Every run (one file import, or one whole sync chain) owns a ProgressState
keyed by its run_id.  A per-kind pointer names the latest run of that kind,
so "what is the import doing?" stays answerable without a run_id.  States
expire after a bounded TTL; an expired state reads as absent.

Two implementations share the ProgressStore protocol:
  PgProgressStore:     ingestion_progress / ingestion_progress_latest tables
  MemoryProgressStore: thread-safe dict, for the CLI dry paths and tests
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Callable, Protocol

import psycopg
from psycopg.types.json import Jsonb

log = logging.getLogger(__name__)

KIND_IMPORT = "import"
KIND_SYNC = "sync"
KINDS = (KIND_IMPORT, KIND_SYNC)

STATE_IDLE = "idle"
STATE_RUNNING = "running"
STATE_COMPLETE = "complete"
STATE_ERROR = "error"

DEFAULT_TTL_SECONDS = 3600


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ProgressState:
    run_id: str
    kind: str
    state: str = STATE_RUNNING
    unit: int = 0
    imported: int = 0
    skipped: int = 0
    rejected: int = 0
    cursor: dict[str, Any] | None = None
    error: str | None = None
    started_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    @property
    def is_running(self) -> bool:
        return self.state == STATE_RUNNING

    def advance(self, **changes: Any) -> "ProgressState":
        """Copy with changes applied and updated_at refreshed."""
        return replace(self, updated_at=_utcnow(), **changes)

    def to_dict(self) -> dict[str, Any]:
        d = dict(self.__dict__)
        d["started_at"] = self.started_at.isoformat()
        d["updated_at"] = self.updated_at.isoformat()
        return d


IDLE = {"state": STATE_IDLE}


class ProgressStore(Protocol):
    def begin(self, state: ProgressState) -> None:
        """Publish a run's first state and point its kind at it."""
        ...

    def put(self, state: ProgressState) -> None:
        ...

    def get(self, run_id: str) -> ProgressState | None:
        ...

    def latest(self, kind: str) -> ProgressState | None:
        ...


# ---------------------------------------------------------------------------
# In-memory store
# ---------------------------------------------------------------------------

class MemoryProgressStore:
    """Process-local store; expiry measured with a monotonic clock."""

    def __init__(
        self,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl = ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._states: dict[str, tuple[ProgressState, float]] = {}
        self._latest: dict[str, str] = {}

    def begin(self, state: ProgressState) -> None:
        with self._lock:
            now = self._clock()
            for run_id in [r for r, (_, exp) in self._states.items() if now >= exp]:
                del self._states[run_id]
            self._states[state.run_id] = (state, now + self._ttl)
            self._latest[state.kind] = state.run_id

    def put(self, state: ProgressState) -> None:
        with self._lock:
            self._states[state.run_id] = (state, self._clock() + self._ttl)

    def get(self, run_id: str) -> ProgressState | None:
        with self._lock:
            entry = self._states.get(run_id)
            if entry is None:
                return None
            state, expires = entry
            if self._clock() >= expires:
                del self._states[run_id]
                return None
            return state

    def latest(self, kind: str) -> ProgressState | None:
        with self._lock:
            run_id = self._latest.get(kind)
        return self.get(run_id) if run_id else None


# ---------------------------------------------------------------------------
# PostgreSQL store
# ---------------------------------------------------------------------------

_STATE_COLUMNS = (
    "run_id", "kind", "state", "unit", "imported", "skipped", "rejected",
    "cursor", "error", "started_at", "updated_at",
)


class PgProgressStore:
    """Durable store; one short autocommit connection per call."""

    def __init__(self, db_dsn: str, ttl_seconds: int = DEFAULT_TTL_SECONDS) -> None:
        self._dsn = db_dsn
        self._ttl = ttl_seconds

    def _connect(self) -> psycopg.Connection:
        return psycopg.connect(self._dsn, autocommit=True)

    def _write(self, conn: psycopg.Connection, state: ProgressState) -> None:
        conn.execute(
            f"""
            INSERT INTO ingestion_progress ({", ".join(_STATE_COLUMNS)}, expires_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s,
                    now() + make_interval(secs => %s::float8))
            ON CONFLICT (run_id) DO UPDATE SET
                state = EXCLUDED.state,
                unit = EXCLUDED.unit,
                imported = EXCLUDED.imported,
                skipped = EXCLUDED.skipped,
                rejected = EXCLUDED.rejected,
                cursor = EXCLUDED.cursor,
                error = EXCLUDED.error,
                updated_at = EXCLUDED.updated_at,
                expires_at = EXCLUDED.expires_at
            """,
            (
                state.run_id, state.kind, state.state, state.unit,
                state.imported, state.skipped, state.rejected,
                Jsonb(state.cursor) if state.cursor is not None else None,
                state.error, state.started_at, state.updated_at,
                self._ttl,
            ),
        )

    def begin(self, state: ProgressState) -> None:
        """Publish a new run; expired states are purged in the same transaction."""
        with self._connect() as conn, conn.transaction():
            self._purge(conn)
            self._write(conn, state)
            conn.execute(
                """
                INSERT INTO ingestion_progress_latest (kind, run_id, updated_at)
                VALUES (%s, %s, now())
                ON CONFLICT (kind) DO UPDATE SET
                    run_id = EXCLUDED.run_id,
                    updated_at = EXCLUDED.updated_at
                """,
                (state.kind, state.run_id),
            )

    def put(self, state: ProgressState) -> None:
        with self._connect() as conn:
            self._write(conn, state)

    def _select(self, where: str, params: tuple) -> ProgressState | None:
        cols = ", ".join(f"p.{c}" for c in _STATE_COLUMNS)
        with self._connect() as conn:
            row = conn.execute(
                f"""
                SELECT {cols}
                FROM ingestion_progress p
                {where}
                  AND p.expires_at > now()
                """,
                params,
            ).fetchone()
        if row is None:
            return None
        return ProgressState(**dict(zip(_STATE_COLUMNS, row)))

    def get(self, run_id: str) -> ProgressState | None:
        return self._select("WHERE p.run_id = %s", (run_id,))

    def latest(self, kind: str) -> ProgressState | None:
        return self._select(
            "JOIN ingestion_progress_latest l ON l.run_id = p.run_id WHERE l.kind = %s",
            (kind,),
        )

    def _purge(self, conn: psycopg.Connection) -> int:
        n = conn.execute(
            "DELETE FROM ingestion_progress WHERE expires_at <= now()"
        ).rowcount
        if n:
            log.info("Purged %d expired progress states", n)
        return n

    def purge_expired(self) -> int:
        with self._connect() as conn:
            return self._purge(conn)
