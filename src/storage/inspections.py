"""
SQLite store for finalized inspections.

Implements the persistence side of DraftSession.finalize(). Schema
versioning recreates the table when the expected version changes.
"""

from __future__ import annotations

import json
import logging
import os
import sqlite3
import threading
from typing import Any, Dict, List, Optional

from models.draft import InspectionRecord

# Schema version - increment when schema changes
EXPECTED_SCHEMA_VERSION = 1


class InspectionStore:
    """
    Stores finalized inspection records.

    Schema:
    - schema_meta: tracks schema version
    - inspections: one row per finalized inspection
    """

    def __init__(self, local_database_path: str):
        """
        Initialize the store.

        Args:
            local_database_path: Path to the SQLite database file (":memory:" allowed).
        """
        self.local_database_path = local_database_path
        self.conn: Optional[sqlite3.Connection] = None
        self._lock = threading.Lock()

        db_dir = os.path.dirname(local_database_path)
        if db_dir:
            os.makedirs(db_dir, exist_ok=True)

        self._ensure_schema()
        logging.info(f"Inspection store initialized at {local_database_path}")

    def _get_connection(self) -> sqlite3.Connection:
        """Get or create database connection."""
        if self.conn is None:
            self.conn = sqlite3.connect(self.local_database_path, check_same_thread=False)
        return self.conn

    def _get_schema_version(self) -> Optional[int]:
        try:
            cursor = self._get_connection().cursor()
            cursor.execute(
                "SELECT name FROM sqlite_master WHERE type='table' AND name='schema_meta'"
            )
            if cursor.fetchone() is None:
                return None
            cursor.execute("SELECT schema_version FROM schema_meta LIMIT 1")
            row = cursor.fetchone()
            return row[0] if row else None
        except sqlite3.Error:
            return None

    def _ensure_schema(self) -> None:
        version = self._get_schema_version()
        if version == EXPECTED_SCHEMA_VERSION:
            return

        if version is not None:
            logging.info(f"Schema version {version} != {EXPECTED_SCHEMA_VERSION}, recreating tables")
        conn = self._get_connection()
        cursor = conn.cursor()
        cursor.execute("DROP TABLE IF EXISTS inspections")
        cursor.execute("DROP TABLE IF EXISTS schema_meta")
        cursor.execute("""
            CREATE TABLE schema_meta (
                id INTEGER PRIMARY KEY CHECK (id = 1),
                schema_version INTEGER NOT NULL,
                created_at TEXT NOT NULL DEFAULT (datetime('now'))
            )
        """)
        cursor.execute("""
            CREATE TABLE inspections (
                id TEXT PRIMARY KEY,
                created_at TEXT NOT NULL,
                municipality_id TEXT NOT NULL,
                counts_json TEXT NOT NULL,
                fill_percent REAL NOT NULL,
                liters_est REAL NOT NULL,
                image_data_url TEXT NOT NULL
            )
        """)
        cursor.execute("CREATE INDEX idx_inspections_created_at ON inspections(created_at)")
        cursor.execute(
            "INSERT INTO schema_meta (id, schema_version) VALUES (1, ?)",
            (EXPECTED_SCHEMA_VERSION,),
        )
        conn.commit()
        logging.info(f"Inspection schema created (version {EXPECTED_SCHEMA_VERSION})")

    def save(self, record: InspectionRecord) -> None:
        """Insert one finalized inspection. Raises sqlite3.Error on failure."""
        with self._lock:
            conn = self._get_connection()
            conn.execute(
                """
                INSERT INTO inspections
                    (id, created_at, municipality_id, counts_json, fill_percent, liters_est, image_data_url)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.id,
                    record.created_at,
                    record.municipality_id,
                    json.dumps(record.counts.model_dump()),
                    record.fill_percent,
                    record.liters_est,
                    record.image_anonymized_data_url,
                ),
            )
            conn.commit()
        logging.info(f"Inspection {record.id} stored (total={self.count()})")

    def list_inspections(self, municipality_id: Optional[str] = None, limit: Optional[int] = None) -> List[InspectionRecord]:
        """Return stored inspections, newest first."""
        query = (
            "SELECT id, created_at, municipality_id, counts_json, fill_percent, liters_est, image_data_url "
            "FROM inspections"
        )
        params: List[Any] = []
        if municipality_id:
            query += " WHERE municipality_id = ?"
            params.append(municipality_id)
        query += " ORDER BY created_at DESC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(int(limit))

        with self._lock:
            rows = self._get_connection().execute(query, params).fetchall()
        return [self._row_to_record(row) for row in rows]

    def count(self) -> int:
        with self._lock:
            row = self._get_connection().execute("SELECT COUNT(*) FROM inspections").fetchone()
        return int(row[0]) if row else 0

    def count_by_municipality(self) -> Dict[str, int]:
        with self._lock:
            rows = self._get_connection().execute(
                "SELECT municipality_id, COUNT(*) FROM inspections GROUP BY municipality_id"
            ).fetchall()
        return {municipality_id: n for municipality_id, n in rows}

    def close(self) -> None:
        if self.conn is not None:
            self.conn.close()
            self.conn = None
            logging.info("Inspection store closed")

    @staticmethod
    def _row_to_record(row) -> InspectionRecord:
        rid, created_at, municipality_id, counts_json, fill, liters, image = row
        return InspectionRecord(
            id=rid,
            created_at=created_at,
            municipality_id=municipality_id,
            counts=json.loads(counts_json),
            fill_percent=fill,
            liters_est=liters,
            image_anonymized_data_url=image,
        )
