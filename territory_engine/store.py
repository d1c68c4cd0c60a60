"""SQLite-backed persistent mapping store.

Tables:
    zip_mappings     every mapping ever written; at most one active row per ZIP
                     (enforced by a partial unique index), superseded rows kept
    validation_log   append-only audit of per-source outcomes
    boundary_flags   ZIPs promoted to multi-territory at runtime
    conflict_events  source disagreements, input to boundary promotion
"""

import json
import logging
import sqlite3
import threading
import time
from pathlib import Path
from typing import Dict, List, Optional

from .errors import PersistenceError
from .models import LogOutcome, ServiceType, ValidationLogEntry, ZipTerritoryMapping

logger = logging.getLogger(__name__)

SOURCE_ID = "persistent_store"
_ZIP_LOCK_STRIPES = 64

_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS zip_mappings (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        zip TEXT NOT NULL,
        city_slug TEXT NOT NULL DEFAULT '',
        city_display_name TEXT NOT NULL DEFAULT '',
        territory_id TEXT NOT NULL,
        territory_name TEXT NOT NULL DEFAULT '',
        service_type TEXT NOT NULL,
        confidence INTEGER NOT NULL CHECK (confidence BETWEEN 0 AND 100),
        source_id TEXT NOT NULL,
        last_validated REAL NOT NULL,
        is_active INTEGER NOT NULL DEFAULT 1,
        created_at REAL NOT NULL,
        deactivated_at REAL,
        deactivation_reason TEXT
    )
    """,
    "CREATE UNIQUE INDEX IF NOT EXISTS idx_zip_one_active ON zip_mappings(zip) WHERE is_active = 1",
    "CREATE INDEX IF NOT EXISTS idx_zip_history ON zip_mappings(zip, id)",
    """
    CREATE TABLE IF NOT EXISTS validation_log (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        zip TEXT NOT NULL,
        source_id TEXT NOT NULL,
        outcome TEXT NOT NULL,
        resolved_territory_id TEXT,
        timestamp REAL NOT NULL,
        detail TEXT NOT NULL DEFAULT ''
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_log_zip ON validation_log(zip, timestamp)",
    "CREATE INDEX IF NOT EXISTS idx_log_source ON validation_log(source_id, timestamp)",
    """
    CREATE TABLE IF NOT EXISTS boundary_flags (
        zip TEXT PRIMARY KEY,
        primary_territory TEXT NOT NULL,
        alternatives_json TEXT NOT NULL,
        reason TEXT NOT NULL DEFAULT '',
        created_at REAL NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS conflict_events (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        zip TEXT NOT NULL,
        source_ids_json TEXT NOT NULL,
        territory_ids_json TEXT NOT NULL,
        timestamp REAL NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_conflict_zip ON conflict_events(zip, timestamp)",
]


class PersistentMappingStore:
    """Durable cache of validated ZIP -> territory mappings."""

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        self._conn: Optional[sqlite3.Connection] = None
        # One shared connection; every statement/transaction runs under this lock
        self._conn_lock = threading.RLock()
        # Upserts for one ZIP serialize on its stripe; the array size is fixed
        self._zip_locks = [threading.Lock() for _ in range(_ZIP_LOCK_STRIPES)]
        self._init_db()

    def _init_db(self):
        try:
            if str(self.db_path) != ":memory:":
                self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False, timeout=5.0)
            self._conn.row_factory = sqlite3.Row
            with self._conn:
                for stmt in _SCHEMA:
                    self._conn.execute(stmt)
        except (sqlite3.Error, OSError) as e:
            raise PersistenceError(f"cannot open store {self.db_path}: {e}")

    def _zip_lock(self, zip_code: str) -> threading.Lock:
        return self._zip_locks[hash(zip_code) % _ZIP_LOCK_STRIPES]

    def _execute(self, sql: str, params=()) -> List[sqlite3.Row]:
        if self._conn is None:
            raise PersistenceError("store is closed")
        try:
            with self._conn_lock:
                return self._conn.execute(sql, params).fetchall()
        except sqlite3.Error as e:
            raise PersistenceError(f"store query failed: {e}")

    # ------------------------------------------------------------------
    # Mappings
    # ------------------------------------------------------------------
    def get_active(self, zip_code: str) -> Optional[ZipTerritoryMapping]:
        """The active mapping for a ZIP, stale or not. Callers decide freshness."""
        rows = self._execute(
            "SELECT * FROM zip_mappings WHERE zip = ? AND is_active = 1", (zip_code,)
        )
        return self._row_to_mapping(rows[0]) if rows else None

    def upsert(self, mapping: ZipTerritoryMapping) -> ZipTerritoryMapping:
        """Write a resolved mapping, superseding any prior active row.

        Same territory: the active row is re-validated in place.
        Different territory: the old row is deactivated and a new one inserted.
        A write older than the current active row's last_validated loses.
        """
        if self._conn is None:
            raise PersistenceError("store is closed", zip_code=mapping.zip_code)
        now = time.time()
        with self._zip_lock(mapping.zip_code), self._conn_lock:
            try:
                with self._conn:
                    row = self._conn.execute(
                        "SELECT * FROM zip_mappings WHERE zip = ? AND is_active = 1",
                        (mapping.zip_code,),
                    ).fetchone()
                    if row is not None:
                        if row["last_validated"] > mapping.last_validated:
                            logger.debug(f"Store: stale write for {mapping.zip_code} ignored")
                            return self._row_to_mapping(row)
                        if row["territory_id"] == mapping.territory_id:
                            self._conn.execute(
                                """UPDATE zip_mappings SET confidence = ?, source_id = ?,
                                   last_validated = ?, territory_name = ?, service_type = ?,
                                   city_slug = ?, city_display_name = ? WHERE id = ?""",
                                (mapping.confidence, mapping.source_id, mapping.last_validated,
                                 mapping.territory_name, mapping.service_type.value,
                                 mapping.city_slug or row["city_slug"],
                                 mapping.city_display_name or row["city_display_name"],
                                 row["id"]),
                            )
                            return self._fetch(row["id"])
                        self._conn.execute(
                            """UPDATE zip_mappings SET is_active = 0, deactivated_at = ?,
                               deactivation_reason = ? WHERE id = ?""",
                            (now, f"superseded by {mapping.territory_id}", row["id"]),
                        )
                        logger.info(
                            f"Store: {mapping.zip_code} {row['territory_id']} superseded by "
                            f"{mapping.territory_id} ({mapping.source_id}, conf={mapping.confidence})"
                        )
                    cur = self._conn.execute(
                        """INSERT INTO zip_mappings (zip, city_slug, city_display_name,
                           territory_id, territory_name, service_type, confidence, source_id,
                           last_validated, is_active, created_at)
                           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 1, ?)""",
                        (mapping.zip_code, mapping.city_slug, mapping.city_display_name,
                         mapping.territory_id, mapping.territory_name, mapping.service_type.value,
                         mapping.confidence, mapping.source_id, mapping.last_validated, now),
                    )
                    return self._fetch(cur.lastrowid)
            except sqlite3.Error as e:
                raise PersistenceError(f"upsert failed for {mapping.zip_code}: {e}",
                                       zip_code=mapping.zip_code, mapping=mapping)

    def _fetch(self, row_id: int) -> ZipTerritoryMapping:
        row = self._conn.execute("SELECT * FROM zip_mappings WHERE id = ?", (row_id,)).fetchone()
        return self._row_to_mapping(row)

    def expire_stale(self, max_age_seconds: float, now: Optional[float] = None) -> int:
        """Deactivate (never delete) active rows older than max_age_seconds."""
        now = now if now is not None else time.time()
        if self._conn is None:
            raise PersistenceError("store is closed")
        try:
            with self._conn_lock, self._conn:
                count = self._conn.execute(
                    """UPDATE zip_mappings SET is_active = 0, deactivated_at = ?,
                       deactivation_reason = 'stale'
                       WHERE is_active = 1 AND last_validated < ?""",
                    (now, now - max_age_seconds),
                ).rowcount
        except sqlite3.Error as e:
            raise PersistenceError(f"expire_stale failed: {e}")
        if count:
            logger.info(f"Store: expired {count} stale mappings")
        return count

    def history(self, zip_code: str) -> List[ZipTerritoryMapping]:
        """Every row ever written for a ZIP, oldest first."""
        rows = self._execute("SELECT * FROM zip_mappings WHERE zip = ? ORDER BY id", (zip_code,))
        return [self._row_to_mapping(r) for r in rows]

    @staticmethod
    def _row_to_mapping(row: sqlite3.Row) -> ZipTerritoryMapping:
        return ZipTerritoryMapping(
            zip_code=row["zip"],
            territory_id=row["territory_id"],
            territory_name=row["territory_name"],
            service_type=ServiceType(row["service_type"]),
            confidence=row["confidence"],
            source_id=row["source_id"],
            last_validated=row["last_validated"],
            city_slug=row["city_slug"],
            city_display_name=row["city_display_name"],
            is_active=bool(row["is_active"]),
            tier="persistent",
        )

    # ------------------------------------------------------------------
    # Validation log
    # ------------------------------------------------------------------
    def append_log(self, entry: ValidationLogEntry) -> int:
        return self.append_logs([entry])[0]

    def append_logs(self, entries: List[ValidationLogEntry]) -> List[int]:
        if self._conn is None:
            raise PersistenceError("store is closed")
        ids = []
        try:
            with self._conn_lock, self._conn:
                for e in entries:
                    cur = self._conn.execute(
                        """INSERT INTO validation_log (zip, source_id, outcome,
                           resolved_territory_id, timestamp, detail) VALUES (?, ?, ?, ?, ?, ?)""",
                        (e.zip_code, e.source_id, e.outcome.value, e.resolved_territory_id,
                         e.timestamp, e.detail),
                    )
                    ids.append(cur.lastrowid)
        except sqlite3.Error as e:
            raise PersistenceError(f"validation log write failed: {e}")
        return ids

    def recent_log(self, zip_code: Optional[str] = None, source_id: Optional[str] = None,
                   limit: int = 100) -> List[ValidationLogEntry]:
        """Newest first."""
        clauses, params = [], []
        if zip_code:
            clauses.append("zip = ?")
            params.append(zip_code)
        if source_id:
            clauses.append("source_id = ?")
            params.append(source_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self._execute(
            f"SELECT * FROM validation_log {where} ORDER BY id DESC LIMIT ?", (*params, limit)
        )
        return [
            ValidationLogEntry(
                id=r["id"],
                zip_code=r["zip"],
                source_id=r["source_id"],
                outcome=LogOutcome(r["outcome"]),
                resolved_territory_id=r["resolved_territory_id"],
                timestamp=r["timestamp"],
                detail=r["detail"],
            )
            for r in rows
        ]

    # ------------------------------------------------------------------
    # Boundary flags / conflicts
    # ------------------------------------------------------------------
    def save_boundary_flag(self, zip_code: str, primary: str, alternatives: List[str],
                           reason: str = "", created_at: Optional[float] = None):
        self._execute_write(
            """INSERT OR REPLACE INTO boundary_flags (zip, primary_territory, alternatives_json,
               reason, created_at) VALUES (?, ?, ?, ?, ?)""",
            (zip_code, primary, json.dumps(alternatives), reason,
             created_at if created_at is not None else time.time()),
        )

    def boundary_flags(self) -> Dict[str, dict]:
        rows = self._execute("SELECT * FROM boundary_flags")
        return {
            r["zip"]: {
                "primary": r["primary_territory"],
                "alternatives": json.loads(r["alternatives_json"]),
                "reason": r["reason"],
                "created_at": r["created_at"],
            }
            for r in rows
        }

    def record_conflict_event(self, zip_code: str, source_ids: List[str],
                              territory_ids: List[str], timestamp: Optional[float] = None):
        self._execute_write(
            """INSERT INTO conflict_events (zip, source_ids_json, territory_ids_json, timestamp)
               VALUES (?, ?, ?, ?)""",
            (zip_code, json.dumps(sorted(set(source_ids))), json.dumps(sorted(set(territory_ids))),
             timestamp if timestamp is not None else time.time()),
        )

    def conflict_events(self, zip_code: str, since: float) -> List[dict]:
        rows = self._execute(
            "SELECT * FROM conflict_events WHERE zip = ? AND timestamp >= ? ORDER BY id",
            (zip_code, since),
        )
        return [
            {
                "source_ids": json.loads(r["source_ids_json"]),
                "territory_ids": json.loads(r["territory_ids_json"]),
                "timestamp": r["timestamp"],
            }
            for r in rows
        ]

    def _execute_write(self, sql: str, params=()):
        if self._conn is None:
            raise PersistenceError("store is closed")
        try:
            with self._conn_lock, self._conn:
                self._conn.execute(sql, params)
        except sqlite3.Error as e:
            raise PersistenceError(f"store write failed: {e}")

    # ------------------------------------------------------------------
    def stats(self) -> dict:
        active = self._execute("SELECT COUNT(*) FROM zip_mappings WHERE is_active = 1")[0][0]
        total = self._execute("SELECT COUNT(*) FROM zip_mappings")[0][0]
        logs = self._execute("SELECT COUNT(*) FROM validation_log")[0][0]
        flags = self._execute("SELECT COUNT(*) FROM boundary_flags")[0][0]
        by_territory = {
            r[0]: r[1]
            for r in self._execute(
                "SELECT territory_id, COUNT(*) FROM zip_mappings WHERE is_active = 1 "
                "GROUP BY territory_id"
            )
        }
        return {
            "active_mappings": active,
            "inactive_mappings": total - active,
            "validation_log_entries": logs,
            "boundary_flags": flags,
            "active_by_territory": by_territory,
        }

    @property
    def size(self) -> int:
        return self._execute("SELECT COUNT(*) FROM zip_mappings WHERE is_active = 1")[0][0]

    def close(self):
        with self._conn_lock:
            if self._conn:
                self._conn.close()
                self._conn = None
