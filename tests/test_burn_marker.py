from __future__ import annotations

import sqlite3
from pathlib import Path

import pytest

from tokenops.runtime.burn_marker import BurnMarkerStore


def test_marker_roundtrip_and_upsert(tmp_path: Path) -> None:
    store = BurnMarkerStore(path=str(tmp_path / "m.db"))
    assert store.last_burned("Mint1") is None

    store.record_burn("Mint1", year=2025, quarter=3, amount=2_250, signature="sig-1")
    store.record_burn("Mint2", year=2025, quarter=1, amount=1, signature="sig-2")
    assert store.last_burned("Mint1") == (2025, 3)

    store.record_burn("Mint1", year=2025, quarter=4, amount=2_000, signature="sig-3")
    assert store.last_burned("Mint1") == (2025, 4)
    assert store.last_burned("Mint2") == (2025, 1)


def test_marker_survives_new_store_instance(tmp_path: Path) -> None:
    path = str(tmp_path / "m.db")
    BurnMarkerStore(path=path).record_burn("Mint1", year=2026, quarter=2, amount=5, signature="s")
    assert BurnMarkerStore(path=path).last_burned("Mint1") == (2026, 2)


def test_wal_mode_is_enabled(tmp_path: Path) -> None:
    store = BurnMarkerStore(path=str(tmp_path / "m.db"))
    store.init_schema()
    with store.connection() as con:
        assert str(con.execute("PRAGMA journal_mode;").fetchone()[0]).lower() == "wal"
        assert int(con.execute("PRAGMA synchronous;").fetchone()[0]) == 2


def test_schema_version_mismatch_is_a_database_error(tmp_path: Path) -> None:
    path = str(tmp_path / "m.db")
    BurnMarkerStore(path=path).init_schema()
    with sqlite3.connect(path) as con:
        con.execute("UPDATE meta SET value='99' WHERE key='schema_version';")

    with pytest.raises(sqlite3.DatabaseError):
        BurnMarkerStore(path=path).last_burned("Mint1")
