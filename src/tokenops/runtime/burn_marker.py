# src/tokenops/runtime/burn_marker.py
from __future__ import annotations

import os
import random
import sqlite3
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional, Tuple


def _now_ms() -> int:
    return int(time.time() * 1000)


def _env_int(name: str, default: int) -> int:
    try:
        raw = str(os.environ.get(name, "")).strip()
        return int(raw) if raw else int(default)
    except ValueError:
        return int(default)


class BurnMarkerStore:
    """Persisted "last burned quarter" per mint.

    Without it, re-running inside a quarter that already burned would burn
    again. The scheduler consults it only when a store is configured
    (runner.state_db_path).

    Single SQLite file, WAL mode, one connection per call so the store is
    safe to share across threads and processes.
    """

    SCHEMA_VERSION = 1

    def __init__(self, *, path: str) -> None:
        self.path = str(path)
        self._schema_ready = False

    def _connect(self) -> sqlite3.Connection:
        Path(self.path).parent.mkdir(parents=True, exist_ok=True)

        timeout_s = float(_env_int("TOKENOPS_SQLITE_CONNECT_TIMEOUT_MS", 30_000)) / 1000.0
        con = sqlite3.connect(
            self.path,
            timeout=timeout_s,
            isolation_level=None,  # we manage BEGIN/COMMIT ourselves
            check_same_thread=False,
        )
        con.row_factory = sqlite3.Row
        con.execute("PRAGMA journal_mode=WAL;")
        con.execute("PRAGMA synchronous=FULL;")
        con.execute(f"PRAGMA busy_timeout={int(timeout_s * 1000)};")
        return con

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        con = self._connect()
        try:
            yield con
        finally:
            con.close()

    @staticmethod
    def _is_locked_error(e: Exception) -> bool:
        msg = str(e).lower()
        return "database is locked" in msg or "database is busy" in msg

    @contextmanager
    def write_tx(self) -> Iterator[sqlite3.Connection]:
        """BEGIN IMMEDIATE with bounded, jittered retry on writer-lock contention."""
        deadline_ts = _now_ms() + max(250, _env_int("TOKENOPS_SQLITE_WRITE_DEADLINE_MS", 10_000))

        with self.connection() as con:
            attempt = 0
            while True:
                try:
                    con.execute("BEGIN IMMEDIATE;")
                    break
                except sqlite3.OperationalError as e:
                    if not self._is_locked_error(e) or _now_ms() >= deadline_ts:
                        raise
                    sleep_s = min(0.25, 0.005 * (2.0 ** min(attempt, 8)))
                    time.sleep(sleep_s * (0.5 + random.random()))
                    attempt += 1

            try:
                yield con
                con.execute("COMMIT;")
            except Exception:
                con.execute("ROLLBACK;")
                raise

    def init_schema(self) -> None:
        if self._schema_ready:
            return
        with self.write_tx() as con:
            con.execute(
                """
                CREATE TABLE IF NOT EXISTS meta (
                  key TEXT PRIMARY KEY,
                  value TEXT NOT NULL
                );
                """
            )
            con.execute(
                """
                CREATE TABLE IF NOT EXISTS burn_markers (
                  mint TEXT PRIMARY KEY,
                  year INTEGER NOT NULL,
                  quarter INTEGER NOT NULL,
                  amount INTEGER NOT NULL,
                  signature TEXT NOT NULL,
                  updated_ts_ms INTEGER NOT NULL
                );
                """
            )

            row = con.execute("SELECT value FROM meta WHERE key='schema_version' LIMIT 1;").fetchone()
            if row is None:
                con.execute("INSERT INTO meta(key, value) VALUES('schema_version', ?);", (str(self.SCHEMA_VERSION),))
            elif str(row["value"]) != str(self.SCHEMA_VERSION):
                raise sqlite3.DatabaseError(
                    f"burn marker schema_version mismatch: have={row['value']} want={self.SCHEMA_VERSION}"
                )
        self._schema_ready = True

    def last_burned(self, mint: str) -> Optional[Tuple[int, int]]:
        """(year, quarter) of the last recorded burn for `mint`, or None."""
        self.init_schema()
        with self.connection() as con:
            row = con.execute("SELECT year, quarter FROM burn_markers WHERE mint=? LIMIT 1;", (str(mint),)).fetchone()
        if row is None:
            return None
        return int(row["year"]), int(row["quarter"])

    def record_burn(self, mint: str, *, year: int, quarter: int, amount: int, signature: str) -> None:
        self.init_schema()
        with self.write_tx() as con:
            con.execute(
                """
                INSERT INTO burn_markers(mint, year, quarter, amount, signature, updated_ts_ms)
                VALUES(?, ?, ?, ?, ?, ?)
                ON CONFLICT(mint) DO UPDATE SET
                  year=excluded.year,
                  quarter=excluded.quarter,
                  amount=excluded.amount,
                  signature=excluded.signature,
                  updated_ts_ms=excluded.updated_ts_ms;
                """,
                (str(mint), int(year), int(quarter), int(amount), str(signature), _now_ms()),
            )
