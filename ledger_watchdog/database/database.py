"""
Database abstraction layer for transfer records and ingestion cursors.

Default backend is SQLite (stdlib sqlite3, WAL); SQLAlchemyBackend serves any
SQLAlchemy URL (e.g. PostgreSQL via DATABASE_URL). All access goes through the
abstract interface; the engine only sees the Database facade.

Invariants both backends keep:
- transfers are upserted by signature and never deleted; enrichment fields
  (risk_score, labels, hints) survive re-ingestion;
- a cursor's last_slot never decreases.
"""

from __future__ import annotations

import json
import sqlite3
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from decimal import Decimal
from pathlib import Path
from typing import Any, Iterator

from sqlalchemy import Boolean, Column, Float, Integer, String, Text, create_engine, func, or_, select
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from ledger_watchdog.database.models import IngestionCursor, TransferRecord
from ledger_watchdog.logging import get_logger

logger = get_logger(__name__)

DEFAULT_DB_PATH = "ledger_watchdog.db"
# Per-instruction records are keyed "<signature>#<instruction index>"
INSTRUCTION_KEY_SEP = "#"

# -----------------------------------------------------------------------------
# Schema (SQLite)
# -----------------------------------------------------------------------------

SCHEMA_TRANSFERS = """
CREATE TABLE IF NOT EXISTS transfers (
    signature TEXT PRIMARY KEY,
    timestamp INTEGER NOT NULL,
    slot INTEGER NOT NULL,
    status TEXT NOT NULL DEFAULT 'confirmed',
    source TEXT NOT NULL,
    destination TEXT NOT NULL,
    amount TEXT NOT NULL,
    raw_amount TEXT,
    mint TEXT,
    risk_score REAL NOT NULL DEFAULT 0,
    labels TEXT NOT NULL DEFAULT '[]',
    hints TEXT NOT NULL DEFAULT '[]',
    created_at INTEGER,
    updated_at INTEGER
);
CREATE INDEX IF NOT EXISTS ix_transfers_timestamp ON transfers(timestamp);
CREATE INDEX IF NOT EXISTS ix_transfers_slot ON transfers(slot);
CREATE INDEX IF NOT EXISTS ix_transfers_source ON transfers(source);
CREATE INDEX IF NOT EXISTS ix_transfers_destination ON transfers(destination);
"""

SCHEMA_CURSORS = """
CREATE TABLE IF NOT EXISTS ingestion_cursors (
    source TEXT PRIMARY KEY,
    last_slot INTEGER NOT NULL,
    last_signature TEXT,
    last_run_at INTEGER,
    active INTEGER NOT NULL DEFAULT 1
);
"""

UPSERT_TRANSFER_SQL = """
INSERT INTO transfers (
    signature, timestamp, slot, status, source, destination, amount, raw_amount, mint,
    risk_score, labels, hints, created_at, updated_at
)
VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
ON CONFLICT(signature) DO UPDATE SET
    timestamp = excluded.timestamp,
    slot = excluded.slot,
    status = excluded.status,
    source = excluded.source,
    destination = excluded.destination,
    amount = excluded.amount,
    raw_amount = excluded.raw_amount,
    mint = excluded.mint,
    updated_at = excluded.updated_at
"""

ADVANCE_CURSOR_SQL = """
INSERT INTO ingestion_cursors (source, last_slot, last_signature, last_run_at, active)
VALUES (?, ?, ?, ?, 1)
ON CONFLICT(source) DO UPDATE SET
    last_slot = MAX(ingestion_cursors.last_slot, excluded.last_slot),
    last_signature = COALESCE(excluded.last_signature, ingestion_cursors.last_signature),
    last_run_at = excluded.last_run_at
"""


# -----------------------------------------------------------------------------
# Abstract backend
# -----------------------------------------------------------------------------


class DatabaseBackend(ABC):
    """Abstract interface for persistence; implemented for SQLite and SQLAlchemy."""

    @abstractmethod
    def ensure_schema(self) -> None:
        """Create tables and indexes if they do not exist."""
        ...

    @abstractmethod
    def upsert_transfers(self, records: list[TransferRecord], now: int) -> int:
        """Upsert records by signature in one transaction. Returns number of records written."""
        ...

    @abstractmethod
    def get_transfer(self, signature: str) -> TransferRecord | None:
        ...

    @abstractmethod
    def get_transfers_for_signature(self, signature: str) -> list[TransferRecord]:
        """Record stored under signature plus per-instruction records "signature#i", shortest key first."""
        ...

    @abstractmethod
    def list_transfers(self, *, limit: int = 50, since_timestamp: int | None = None) -> list[TransferRecord]:
        """Stored transfers, newest first."""
        ...

    @abstractmethod
    def get_cursor(self, source: str) -> IngestionCursor | None:
        ...

    @abstractmethod
    def advance_cursor(self, source: str, slot: int, last_signature: str | None, now: int) -> None:
        """Create or move the cursor forward; last_slot = max(existing, slot)."""
        ...

    @abstractmethod
    def touch_cursor(self, source: str, now: int) -> bool:
        """Update last_run_at only. Returns False if the cursor does not exist."""
        ...

    @abstractmethod
    def set_cursor_active(self, source: str, active: bool, now: int) -> None:
        """Pause or resume a source; creates the cursor at slot 0 if missing."""
        ...


# -----------------------------------------------------------------------------
# SQLite backend
# -----------------------------------------------------------------------------


def _row_to_transfer(row: Any) -> TransferRecord:
    return TransferRecord(
        signature=row["signature"],
        timestamp=row["timestamp"],
        slot=row["slot"],
        status=row["status"],
        source=row["source"],
        destination=row["destination"],
        amount=Decimal(row["amount"]),
        raw_amount=row["raw_amount"] or "",
        mint=row["mint"] or "",
        risk_score=row["risk_score"] or 0.0,
        labels=json.loads(row["labels"] or "[]"),
        hints=json.loads(row["hints"] or "[]"),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_cursor(row: Any) -> IngestionCursor:
    return IngestionCursor(
        source=row["source"],
        last_slot=row["last_slot"],
        last_signature=row["last_signature"],
        last_run_at=row["last_run_at"],
        active=bool(row["active"]),
    )


class SQLiteBackend(DatabaseBackend):
    """SQLite implementation; single file, one connection per operation."""

    def __init__(self, path: str | Path, *, timeout_sec: float = 5.0) -> None:
        self._path = Path(path)
        self._timeout_sec = timeout_sec

    def _connect(self) -> sqlite3.Connection:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(self._path), timeout=self._timeout_sec)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode = WAL")
        return conn

    @contextmanager
    def _cursor(self) -> Iterator[sqlite3.Cursor]:
        conn = self._connect()
        try:
            cur = conn.cursor()
            yield cur
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def ensure_schema(self) -> None:
        with self._cursor() as cur:
            for stmt in (SCHEMA_TRANSFERS, SCHEMA_CURSORS):
                cur.executescript(stmt)

    def upsert_transfers(self, records: list[TransferRecord], now: int) -> int:
        if not records:
            return 0
        rows = [
            (
                r.signature,
                r.timestamp,
                r.slot,
                r.status,
                r.source,
                r.destination,
                str(r.amount),
                r.raw_amount,
                r.mint,
                r.risk_score,
                json.dumps(r.labels),
                json.dumps(r.hints),
                now,
                now,
            )
            for r in records
        ]
        with self._cursor() as cur:
            cur.executemany(UPSERT_TRANSFER_SQL, rows)
        return len(rows)

    def get_transfer(self, signature: str) -> TransferRecord | None:
        with self._cursor() as cur:
            cur.execute("SELECT * FROM transfers WHERE signature = ?", (signature,))
            row = cur.fetchone()
        return _row_to_transfer(row) if row else None

    def get_transfers_for_signature(self, signature: str) -> list[TransferRecord]:
        prefix = signature + INSTRUCTION_KEY_SEP
        with self._cursor() as cur:
            cur.execute(
                "SELECT * FROM transfers WHERE signature = ? OR substr(signature, 1, ?) = ?"
                " ORDER BY length(signature), signature",
                (signature, len(prefix), prefix),
            )
            rows = cur.fetchall()
        return [_row_to_transfer(r) for r in rows]

    def list_transfers(self, *, limit: int = 50, since_timestamp: int | None = None) -> list[TransferRecord]:
        sql = "SELECT * FROM transfers"
        params: list[Any] = []
        if since_timestamp is not None:
            sql += " WHERE timestamp >= ?"
            params.append(since_timestamp)
        sql += " ORDER BY slot DESC, signature LIMIT ?"
        params.append(limit)
        with self._cursor() as cur:
            cur.execute(sql, params)
            rows = cur.fetchall()
        return [_row_to_transfer(r) for r in rows]

    def get_cursor(self, source: str) -> IngestionCursor | None:
        with self._cursor() as cur:
            cur.execute("SELECT * FROM ingestion_cursors WHERE source = ?", (source,))
            row = cur.fetchone()
        return _row_to_cursor(row) if row else None

    def advance_cursor(self, source: str, slot: int, last_signature: str | None, now: int) -> None:
        with self._cursor() as cur:
            cur.execute(ADVANCE_CURSOR_SQL, (source, slot, last_signature, now))

    def touch_cursor(self, source: str, now: int) -> bool:
        with self._cursor() as cur:
            cur.execute(
                "UPDATE ingestion_cursors SET last_run_at = ? WHERE source = ?",
                (now, source),
            )
            return cur.rowcount > 0

    def set_cursor_active(self, source: str, active: bool, now: int) -> None:
        with self._cursor() as cur:
            cur.execute(
                """
                INSERT INTO ingestion_cursors (source, last_slot, last_signature, last_run_at, active)
                VALUES (?, 0, NULL, ?, ?)
                ON CONFLICT(source) DO UPDATE SET active = excluded.active
                """,
                (source, now, 1 if active else 0),
            )


# -----------------------------------------------------------------------------
# SQLAlchemy backend (DATABASE_URL)
# -----------------------------------------------------------------------------

Base = declarative_base()


class TransferRow(Base):
    __tablename__ = "transfers"

    signature = Column(String(128), primary_key=True)
    timestamp = Column(Integer, nullable=False, index=True)
    slot = Column(Integer, nullable=False, index=True)
    status = Column(String(32), nullable=False, default="confirmed")
    source = Column(String(64), nullable=False, index=True)
    destination = Column(String(64), nullable=False, index=True)
    amount = Column(String(64), nullable=False)  # string avoids precision loss
    raw_amount = Column(String(64), nullable=True)
    mint = Column(String(64), nullable=True)
    risk_score = Column(Float, nullable=False, default=0.0)
    labels = Column(Text, nullable=False, default="[]")  # JSON array
    hints = Column(Text, nullable=False, default="[]")  # JSON array
    created_at = Column(Integer, nullable=True)
    updated_at = Column(Integer, nullable=True)

    def to_record(self) -> TransferRecord:
        return TransferRecord(
            signature=self.signature,
            timestamp=self.timestamp,
            slot=self.slot,
            status=self.status,
            source=self.source,
            destination=self.destination,
            amount=Decimal(self.amount),
            raw_amount=self.raw_amount or "",
            mint=self.mint or "",
            risk_score=self.risk_score or 0.0,
            labels=json.loads(self.labels or "[]"),
            hints=json.loads(self.hints or "[]"),
            created_at=self.created_at,
            updated_at=self.updated_at,
        )


class CursorRow(Base):
    __tablename__ = "ingestion_cursors"

    source = Column(String(64), primary_key=True)
    last_slot = Column(Integer, nullable=False)
    last_signature = Column(String(128), nullable=True)
    last_run_at = Column(Integer, nullable=True)
    active = Column(Boolean, nullable=False, default=True)

    def to_cursor(self) -> IngestionCursor:
        return IngestionCursor(
            source=self.source,
            last_slot=self.last_slot,
            last_signature=self.last_signature,
            last_run_at=self.last_run_at,
            active=bool(self.active),
        )


def _redact_url(url: str) -> str:
    return url.split("?")[0].split("@")[-1].split("//")[-1]


class SQLAlchemyBackend(DatabaseBackend):
    """SQLAlchemy ORM implementation for PostgreSQL (or any URL SQLAlchemy supports)."""

    def __init__(self, url: str) -> None:
        connect_args: dict[str, Any] = {}
        if url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self._engine = create_engine(url, connect_args=connect_args, pool_pre_ping=True)
        self._sessions = sessionmaker(autocommit=False, autoflush=False, bind=self._engine)
        logger.info("database_engine_created", url=_redact_url(url))

    @contextmanager
    def _session_scope(self) -> Iterator[Session]:
        """Commits on success, rolls back on error."""
        session = self._sessions()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def ensure_schema(self) -> None:
        Base.metadata.create_all(self._engine)

    def upsert_transfers(self, records: list[TransferRecord], now: int) -> int:
        if not records:
            return 0
        with self._session_scope() as session:
            for r in records:
                row = session.get(TransferRow, r.signature)
                if row is None:
                    row = TransferRow(
                        signature=r.signature,
                        risk_score=r.risk_score,
                        labels=json.dumps(r.labels),
                        hints=json.dumps(r.hints),
                        created_at=now,
                    )
                    session.add(row)
                row.timestamp = r.timestamp
                row.slot = r.slot
                row.status = r.status
                row.source = r.source
                row.destination = r.destination
                row.amount = str(r.amount)
                row.raw_amount = r.raw_amount
                row.mint = r.mint
                row.updated_at = now
                # Records with the same signature in one batch must hit the pending row
                session.flush()
        return len(records)

    def get_transfer(self, signature: str) -> TransferRecord | None:
        with self._session_scope() as session:
            row = session.get(TransferRow, signature)
            return row.to_record() if row else None

    def get_transfers_for_signature(self, signature: str) -> list[TransferRecord]:
        prefix = signature + INSTRUCTION_KEY_SEP
        stmt = (
            select(TransferRow)
            .where(or_(TransferRow.signature == signature, TransferRow.signature.startswith(prefix, autoescape=True)))
            .order_by(func.length(TransferRow.signature), TransferRow.signature)
        )
        with self._session_scope() as session:
            return [row.to_record() for row in session.scalars(stmt)]

    def list_transfers(self, *, limit: int = 50, since_timestamp: int | None = None) -> list[TransferRecord]:
        stmt = select(TransferRow)
        if since_timestamp is not None:
            stmt = stmt.where(TransferRow.timestamp >= since_timestamp)
        stmt = stmt.order_by(TransferRow.slot.desc(), TransferRow.signature).limit(limit)
        with self._session_scope() as session:
            return [row.to_record() for row in session.scalars(stmt)]

    def get_cursor(self, source: str) -> IngestionCursor | None:
        with self._session_scope() as session:
            row = session.get(CursorRow, source)
            return row.to_cursor() if row else None

    def advance_cursor(self, source: str, slot: int, last_signature: str | None, now: int) -> None:
        with self._session_scope() as session:
            row = session.get(CursorRow, source, with_for_update=True)
            if row is None:
                session.add(
                    CursorRow(
                        source=source,
                        last_slot=slot,
                        last_signature=last_signature,
                        last_run_at=now,
                        active=True,
                    )
                )
                return
            row.last_slot = max(row.last_slot, slot)
            if last_signature is not None:
                row.last_signature = last_signature
            row.last_run_at = now

    def touch_cursor(self, source: str, now: int) -> bool:
        with self._session_scope() as session:
            row = session.get(CursorRow, source)
            if row is None:
                return False
            row.last_run_at = now
            return True

    def set_cursor_active(self, source: str, active: bool, now: int) -> None:
        with self._session_scope() as session:
            row = session.get(CursorRow, source)
            if row is None:
                session.add(CursorRow(source=source, last_slot=0, last_run_at=now, active=active))
            else:
                row.active = active


# -----------------------------------------------------------------------------
# High-level API
# -----------------------------------------------------------------------------


class Database:
    """
    Facade over a DatabaseBackend: transfer sink and ingestion cursor store.

    Usage:
        db = get_database("data/ledger_watchdog.db")
        db.upsert_transfers(records)
        db.advance_cursor("rpc_polling", slot=312_000_500)
    """

    def __init__(self, backend: DatabaseBackend) -> None:
        self._backend = backend

    @property
    def backend(self) -> DatabaseBackend:
        return self._backend

    def ensure_schema(self) -> None:
        self._backend.ensure_schema()

    # --- Transfers (sink) ---

    def upsert_transfer(self, record: TransferRecord) -> None:
        self.upsert_transfers([record])

    def upsert_transfers(self, records: list[TransferRecord]) -> int:
        """Idempotent write keyed by signature; one transaction for the whole list."""
        return self._backend.upsert_transfers(records, int(time.time()))

    def get_transfer(self, signature: str) -> TransferRecord | None:
        return self._backend.get_transfer(signature)

    def get_transfers_for_signature(self, signature: str) -> list[TransferRecord]:
        return self._backend.get_transfers_for_signature(signature)

    def list_transfers(self, *, limit: int = 50, since_timestamp: int | None = None) -> list[TransferRecord]:
        return self._backend.list_transfers(limit=limit, since_timestamp=since_timestamp)

    # --- Cursor store ---

    def get_cursor(self, source: str) -> IngestionCursor | None:
        return self._backend.get_cursor(source)

    def advance_cursor(self, source: str, slot: int, last_signature: str | None = None) -> None:
        self._backend.advance_cursor(source, slot, last_signature, int(time.time()))

    def touch_cursor(self, source: str) -> bool:
        return self._backend.touch_cursor(source, int(time.time()))

    def set_cursor_active(self, source: str, active: bool) -> None:
        self._backend.set_cursor_active(source, active, int(time.time()))


def get_database(path: str | Path | None = None, *, url: str | None = None) -> Database:
    """
    Return a Database with its schema ensured.

    url: SQLAlchemy URL (e.g. postgresql+psycopg://...); takes precedence when set.
    path: SQLite file path; default "ledger_watchdog.db" in cwd.
    """
    if url:
        backend: DatabaseBackend = SQLAlchemyBackend(url)
    else:
        backend = SQLiteBackend(path if path is not None else Path(DEFAULT_DB_PATH))
    db = Database(backend)
    db.ensure_schema()
    return db
