# src/stakeledger/runtime/sqlite_db.py
from __future__ import annotations

import json
import logging
import os
import random
import sqlite3
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional

from stakeledger.runtime.structured_logging import log_event

Json = Dict[str, Any]

_log = logging.getLogger("stakeledger.store")


def _now_ms() -> int:
    return int(time.time() * 1000)


def _canon_json(obj: Any) -> str:
    # No default=str: a non-JSON value in a snapshot is a bug, not something to coerce.
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _env_int(name: str, default: int) -> int:
    try:
        raw = str(os.environ.get(name, "")).strip()
        return int(raw) if raw else int(default)
    except ValueError:
        return int(default)


class SqliteDB:
    """SQLite manager for the staking ledger.

    Design goals:
      - single durable DB file for snapshot + operation journal
      - cross-thread safe by never sharing connections

    SQLite allows only one writer at a time, so write_tx() retries
    BEGIN IMMEDIATE with bounded backoff.
    """

    SCHEMA_VERSION = 1

    def __init__(self, *, path: str) -> None:
        self.path = str(path)

    def ensure_parent_dir(self) -> None:
        Path(self.path).parent.mkdir(parents=True, exist_ok=True)

    def _connect(self) -> sqlite3.Connection:
        self.ensure_parent_dir()

        connect_timeout_s = float(_env_int("STAKELEDGER_SQLITE_CONNECT_TIMEOUT_MS", 30_000)) / 1000.0
        con = sqlite3.connect(
            self.path,
            timeout=connect_timeout_s,
            isolation_level=None,  # we manage BEGIN/COMMIT ourselves
            check_same_thread=False,
        )
        con.row_factory = sqlite3.Row

        con.execute("PRAGMA journal_mode=WAL;")
        con.execute("PRAGMA synchronous=FULL;")
        con.execute("PRAGMA foreign_keys=ON;")

        busy_ms = max(0, _env_int("STAKELEDGER_SQLITE_BUSY_TIMEOUT_MS", int(connect_timeout_s * 1000)))
        con.execute(f"PRAGMA busy_timeout={busy_ms};")
        return con

    def init_schema(self) -> None:
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
                CREATE TABLE IF NOT EXISTS ledger_state (
                  id INTEGER PRIMARY KEY CHECK (id = 1),
                  state_json TEXT NOT NULL,
                  updated_ts_ms INTEGER NOT NULL
                );
                """
            )

            con.execute(
                """
                CREATE TABLE IF NOT EXISTS ledger_ops (
                  seq INTEGER PRIMARY KEY AUTOINCREMENT,
                  op TEXT NOT NULL,
                  ledger_ts INTEGER NOT NULL,
                  receipt_json TEXT NOT NULL,
                  created_ts_ms INTEGER NOT NULL
                );
                """
            )
            con.execute("CREATE INDEX IF NOT EXISTS idx_ledger_ops_op ON ledger_ops(op);")

            con.execute(
                """
                CREATE TABLE IF NOT EXISTS gateway_state (
                  id INTEGER PRIMARY KEY CHECK (id = 1),
                  state_json TEXT NOT NULL,
                  updated_ts_ms INTEGER NOT NULL
                );
                """
            )

            row = con.execute("SELECT value FROM meta WHERE key='schema_version' LIMIT 1;").fetchone()
            if row is None:
                con.execute("INSERT INTO meta(key, value) VALUES('schema_version', ?);", (str(self.SCHEMA_VERSION),))
            else:
                try:
                    v = int(str(row["value"]))
                except ValueError:
                    v = 0
                if v != self.SCHEMA_VERSION:
                    raise RuntimeError(
                        f"sqlite schema_version mismatch: have={v} want={self.SCHEMA_VERSION}. "
                        "Refuse to start to avoid corrupting data."
                    )

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
        return ("database is locked" in msg) or ("database is busy" in msg)

    @contextmanager
    def write_tx(self) -> Iterator[sqlite3.Connection]:
        """Open a write transaction with bounded retry on writer-lock contention.

        Policy:
          - retry BEGIN IMMEDIATE until a deadline
          - exponential backoff with jitter
          - then raise (fail closed)
        """
        deadline_ts = _now_ms() + max(250, _env_int("STAKELEDGER_SQLITE_WRITE_DEADLINE_MS", 30_000))
        base_sleep = 0.005
        max_sleep = 0.25

        with self.connection() as con:
            attempt = 0
            while True:
                try:
                    con.execute("BEGIN IMMEDIATE;")
                    break
                except sqlite3.OperationalError as e:
                    if not self._is_locked_error(e) or _now_ms() >= deadline_ts:
                        raise
                    sleep_s = min(max_sleep, base_sleep * (2.0 ** min(attempt, 8)))
                    time.sleep(sleep_s * (0.5 + random.random()))
                    attempt += 1

            try:
                yield con
                con.execute("COMMIT;")
            except Exception:
                con.execute("ROLLBACK;")
                raise


class LedgerStore:
    """Ledger snapshot + operation journal persisted in SQLite.

      - read(): latest snapshot
      - read_gateway(): latest settlement gateway state, if one was stored
      - commit_many(snapshot, receipts): replace the snapshot (and gateway
        state) and append the receipts in one transaction
      - journal(): receipts in commit order
    """

    def __init__(self, *, db: SqliteDB) -> None:
        self._db = db
        self._db.init_schema()

    def exists(self) -> bool:
        with self._db.connection() as con:
            return con.execute("SELECT 1 FROM ledger_state WHERE id=1;").fetchone() is not None

    def _read_row(self, table: str) -> Optional[Json]:
        with self._db.connection() as con:
            row = con.execute(f"SELECT state_json FROM {table} WHERE id=1;").fetchone()
        if row is None:
            return None
        st = json.loads(str(row["state_json"]))
        if not isinstance(st, dict):
            raise ValueError(f"{table} is not a JSON object")
        return st

    def read(self) -> Json:
        st = self._read_row("ledger_state")
        if st is None:
            raise FileNotFoundError("sqlite ledger_state is missing")
        return st

    def read_gateway(self) -> Optional[Json]:
        return self._read_row("gateway_state")

    def _upsert(self, con: sqlite3.Connection, table: str, state: Json) -> None:
        con.execute(
            f"""
            INSERT INTO {table}(id, state_json, updated_ts_ms)
            VALUES(1, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
              state_json=excluded.state_json,
              updated_ts_ms=excluded.updated_ts_ms;
            """,
            (_canon_json(state), _now_ms()),
        )

    def write(self, snapshot: Json, *, gateway_state: Optional[Json] = None) -> None:
        if not isinstance(snapshot, dict):
            raise ValueError("ledger write expects dict")
        with self._db.write_tx() as con:
            self._upsert(con, "ledger_state", snapshot)
            if gateway_state is not None:
                self._upsert(con, "gateway_state", gateway_state)

    def commit_many(
        self, snapshot: Json, receipts: Iterable[Json], *, gateway_state: Optional[Json] = None
    ) -> List[int]:
        """Persist snapshot, gateway state and receipts atomically; returns the journal seqs."""
        if not isinstance(snapshot, dict):
            raise ValueError("ledger commit expects a dict snapshot")
        rows = []
        for receipt in receipts:
            if not isinstance(receipt, dict):
                raise ValueError("ledger commit expects dict receipts")
            op = str(receipt.get("applied") or "").strip()
            if not op:
                raise ValueError("receipt is missing 'applied'")
            rows.append((op, int(receipt.get("now") or 0), _canon_json(receipt)))

        seqs: List[int] = []
        with self._db.write_tx() as con:
            self._upsert(con, "ledger_state", snapshot)
            if gateway_state is not None:
                self._upsert(con, "gateway_state", gateway_state)
            for op, ledger_ts, receipt_json in rows:
                cur = con.execute(
                    "INSERT INTO ledger_ops(op, ledger_ts, receipt_json, created_ts_ms) VALUES(?, ?, ?, ?);",
                    (op, ledger_ts, receipt_json, _now_ms()),
                )
                seqs.append(int(cur.lastrowid or 0))
        log_event(_log, "ledger_committed", level=logging.DEBUG, ops=[r[0] for r in rows], seqs=seqs)
        return seqs

    def commit(self, snapshot: Json, receipt: Json, *, gateway_state: Optional[Json] = None) -> int:
        return self.commit_many(snapshot, [receipt], gateway_state=gateway_state)[-1]

    def journal(self, *, limit: int = 100, after_seq: int = 0) -> List[Json]:
        with self._db.connection() as con:
            rows = con.execute(
                "SELECT seq, receipt_json FROM ledger_ops WHERE seq > ? ORDER BY seq ASC LIMIT ?;",
                (int(after_seq), max(1, int(limit))),
            ).fetchall()
        out: List[Json] = []
        for r in rows:
            rec = json.loads(str(r["receipt_json"]))
            rec["seq"] = int(r["seq"])
            out.append(rec)
        return out
