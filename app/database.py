from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Iterable, Sequence
from urllib.parse import urlparse

import aiosqlite

from app.config import DATABASE_MAX_CONNECTIONS, DATABASE_PATH, DATABASE_URL, SEED_DEMO_DATA

try:  # Optional: only required when DATABASE_URL is set (Postgres)
    import asyncpg  # type: ignore
except Exception:  # pragma: no cover - optional dependency
    asyncpg = None

logger = logging.getLogger(__name__)


class DatabaseAdapter:
    engine: str

    async def execute(self, query: str, params: Sequence | None = None) -> int:  # pragma: no cover - interface
        """Run a statement and return the number of affected rows."""
        raise NotImplementedError

    async def executemany(self, query: str, seq_params: Iterable[Sequence]) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    async def fetch_one(self, query: str, params: Sequence | None = None):  # pragma: no cover - interface
        raise NotImplementedError

    async def fetch_all(self, query: str, params: Sequence | None = None):  # pragma: no cover - interface
        raise NotImplementedError

    async def commit(self) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    async def close(self) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    async def executescript(self, script: str) -> None:  # pragma: no cover - interface
        raise NotImplementedError


@dataclass
class SQLiteAdapter(DatabaseAdapter):
    conn: aiosqlite.Connection
    engine: str = "sqlite"

    async def execute(self, query: str, params: Sequence | None = None) -> int:
        cursor = await self.conn.execute(query, params or ())
        return cursor.rowcount

    async def executemany(self, query: str, seq_params: Iterable[Sequence]) -> None:
        await self.conn.executemany(query, seq_params)

    async def fetch_one(self, query: str, params: Sequence | None = None):
        cursor = await self.conn.execute(query, params or ())
        return await cursor.fetchone()

    async def fetch_all(self, query: str, params: Sequence | None = None):
        cursor = await self.conn.execute(query, params or ())
        return await cursor.fetchall()

    async def commit(self) -> None:
        await self.conn.commit()

    async def close(self) -> None:
        await self.conn.close()

    async def executescript(self, script: str) -> None:
        await self.conn.executescript(script)


@dataclass
class PostgresAdapter(DatabaseAdapter):
    pool: "asyncpg.Pool"  # type: ignore[name-defined]
    engine: str = "postgres"

    @staticmethod
    def _translate_query(query: str) -> str:
        # Convert SQLite-style ? placeholders to asyncpg-style $1, $2, ...
        if "$1" in query:
            return query
        idx = 1
        out = []
        for ch in query:
            if ch == "?":
                out.append(f"${idx}")
                idx += 1
            else:
                out.append(ch)
        return "".join(out)

    @staticmethod
    def _rowcount(status: str) -> int:
        # asyncpg returns the command tag, e.g. "UPDATE 1" or "INSERT 0 1"
        tail = status.rsplit(" ", 1)[-1] if status else ""
        return int(tail) if tail.isdigit() else 0

    async def execute(self, query: str, params: Sequence | None = None) -> int:
        q = self._translate_query(query)
        async with self.pool.acquire() as conn:
            status = await conn.execute(q, *(params or ()))
        return self._rowcount(status)

    async def executemany(self, query: str, seq_params: Iterable[Sequence]) -> None:
        q = self._translate_query(query)
        async with self.pool.acquire() as conn:
            await conn.executemany(q, seq_params)

    async def fetch_one(self, query: str, params: Sequence | None = None):
        q = self._translate_query(query)
        async with self.pool.acquire() as conn:
            return await conn.fetchrow(q, *(params or ()))

    async def fetch_all(self, query: str, params: Sequence | None = None):
        q = self._translate_query(query)
        async with self.pool.acquire() as conn:
            return await conn.fetch(q, *(params or ()))

    async def commit(self) -> None:
        # asyncpg autocommits per statement unless an explicit transaction is used.
        return

    async def close(self) -> None:
        await self.pool.close()

    async def executescript(self, script: str) -> None:
        # Not supported for Postgres; callers should split statements.
        raise NotImplementedError


_db: DatabaseAdapter | None = None


async def get_db() -> DatabaseAdapter:
    global _db
    if _db is None:
        if DATABASE_URL:
            if DATABASE_URL.startswith("sqlite"):
                sqlite_path = _sqlite_path_from_url(DATABASE_URL) or DATABASE_PATH
                conn = await aiosqlite.connect(sqlite_path)
                conn.row_factory = aiosqlite.Row
                _db = SQLiteAdapter(conn)
                logger.info("Connected to SQLite database at %s", sqlite_path)
            else:
                if asyncpg is None:
                    raise RuntimeError(
                        "DATABASE_URL is set but asyncpg is not installed. "
                        "Install asyncpg or unset DATABASE_URL."
                    )
                pool = await asyncpg.create_pool(
                    dsn=DATABASE_URL,
                    min_size=1,
                    max_size=DATABASE_MAX_CONNECTIONS,
                )
                _db = PostgresAdapter(pool)
                logger.info("Connected to Postgres database")
        else:
            conn = await aiosqlite.connect(DATABASE_PATH)
            conn.row_factory = aiosqlite.Row
            _db = SQLiteAdapter(conn)
            logger.info("Connected to SQLite database at %s", DATABASE_PATH)
    return _db


def _sqlite_path_from_url(url: str) -> str:
    parsed = urlparse(url)
    path = parsed.path or ""
    if not path or path == "/":
        return ""
    # sqlite:////absolute/path.db -> keep absolute path
    if url.startswith("sqlite:////"):
        return path
    # sqlite:///relative.db -> strip leading slash
    if path.startswith("/"):
        return path[1:]
    return path


# Timestamps are ISO-8601 UTC strings on both engines so they compare lexically.
TABLES = [
    """
    CREATE TABLE IF NOT EXISTS emergency_cases (
        id TEXT PRIMARY KEY,
        patient_id TEXT NOT NULL,
        description TEXT NOT NULL DEFAULT '',
        severity TEXT NOT NULL,
        latitude DOUBLE PRECISION NOT NULL,
        longitude DOUBLE PRECISION NOT NULL,
        address TEXT,
        status TEXT NOT NULL DEFAULT 'pending',
        assigned_hospital_id TEXT,
        assigned_responder_id TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS hospitals (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        latitude DOUBLE PRECISION NOT NULL,
        longitude DOUBLE PRECISION NOT NULL,
        address TEXT,
        total_beds INTEGER NOT NULL,
        available_beds INTEGER NOT NULL,
        icu_beds INTEGER NOT NULL DEFAULT 0,
        ventilators INTEGER NOT NULL DEFAULT 0,
        specialties TEXT NOT NULL DEFAULT '[]',
        updated_at TEXT,
        CHECK (available_beds >= 0 AND available_beds <= total_beds)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS emergency_responders (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        vehicle_id TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'available',
        latitude DOUBLE PRECISION NOT NULL,
        longitude DOUBLE PRECISION NOT NULL,
        address TEXT,
        last_update TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS verification_codes (
        id TEXT PRIMARY KEY,
        code TEXT NOT NULL UNIQUE,
        role TEXT NOT NULL,
        created_at TEXT NOT NULL,
        created_by TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS reservation_holds (
        id TEXT PRIMARY KEY,
        case_id TEXT NOT NULL,
        hospital_id TEXT,
        responder_id TEXT,
        created_at TEXT NOT NULL
    )
    """,
]

SQLITE_SCHEMA = ";\n".join(stmt.strip() for stmt in TABLES) + ";"


async def init_db() -> None:
    db = await get_db()

    if db.engine == "sqlite":
        await db.executescript(SQLITE_SCHEMA)
    else:
        for stmt in TABLES:
            await db.execute(stmt)

    await db.commit()

    if SEED_DEMO_DATA:
        await _seed_demo_data(db)


async def close_db() -> None:
    global _db
    if _db is not None:
        await _db.close()
        _db = None


async def _seed_demo_data(db: DatabaseAdapter) -> None:
    """Seed a few hospitals and responders so a fresh install can assign cases."""
    existing = await db.fetch_one("SELECT COUNT(*) AS count FROM hospitals")
    if existing and existing["count"]:
        return

    now = datetime.now(UTC).isoformat()
    hospitals = [
        ("demo-general", "Springfield General Hospital", 39.7990, -89.6440,
         "800 E Carpenter St", 40, 12, 6, 8, ["cardiology", "trauma"]),
        ("demo-memorial", "Memorial Medical Center", 39.8100, -89.6550,
         "701 N 1st St", 60, 4, 10, 12, ["stroke", "neurology"]),
        ("demo-stjohn", "St. John's Hospital", 39.8060, -89.6480,
         "800 E Mason St", 30, 0, 4, 5, ["pediatrics"]),
    ]
    responders = [
        ("demo-unit-1", "demo-responder-1", "AMB-101", "available", 39.7817, -89.6501),
        ("demo-unit-2", "demo-responder-2", "AMB-102", "available", 39.8200, -89.6000),
        ("demo-unit-3", "demo-responder-3", "AMB-103", "busy", 39.7500, -89.7000),
    ]

    await db.executemany(
        """INSERT INTO hospitals (
            id, name, latitude, longitude, address, total_beds, available_beds,
            icu_beds, ventilators, specialties, updated_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
        [(*h[:9], json.dumps(h[9]), now) for h in hospitals],
    )
    await db.executemany(
        """INSERT INTO emergency_responders (
            id, user_id, vehicle_id, status, latitude, longitude, last_update
        ) VALUES (?, ?, ?, ?, ?, ?, ?)""",
        [(*r, now) for r in responders],
    )
    await db.commit()
    logger.info("Seeded %d demo hospitals and %d demo responders", len(hospitals), len(responders))


# Driver errors that callers treat as transient store failures.
DB_ERRORS: tuple[type[BaseException], ...] = (aiosqlite.Error, OSError, TimeoutError)
if asyncpg is not None:
    DB_ERRORS += (asyncpg.PostgresError, asyncpg.InterfaceError)

# Constraint violations: the statement will fail the same way on retry.
INTEGRITY_ERRORS: tuple[type[BaseException], ...] = (aiosqlite.IntegrityError,)
if asyncpg is not None:
    INTEGRITY_ERRORS += (asyncpg.IntegrityConstraintViolationError,)
