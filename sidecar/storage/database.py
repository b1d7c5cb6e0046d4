"""SQLite database for patients, RHC studies and their consolidated snapshots."""

from __future__ import annotations

import os
import sqlite3
import time
import uuid
from datetime import date
from typing import Any

import platformdirs


def _now_millis() -> int:
    """Return current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


_SCHEMA = """
CREATE TABLE IF NOT EXISTS settings (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at_millis INTEGER
);

CREATE TABLE IF NOT EXISTS patients (
    id TEXT PRIMARY KEY,
    internal_code TEXT NOT NULL UNIQUE,
    display_name TEXT,
    sex TEXT,
    birth_date_millis INTEGER,
    weight_kg REAL,
    height_cm REAL,
    notes TEXT,
    created_at_millis INTEGER NOT NULL,
    updated_at_millis INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS studies (
    id TEXT PRIMARY KEY,
    patient_id TEXT NOT NULL REFERENCES patients(id) ON DELETE CASCADE,
    type TEXT NOT NULL,
    started_at_millis INTEGER NOT NULL,
    ended_at_millis INTEGER,
    notes TEXT,
    created_at_millis INTEGER NOT NULL,
    updated_at_millis INTEGER NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_studies_patient_id ON studies(patient_id);
CREATE INDEX IF NOT EXISTS idx_studies_started_at ON studies(started_at_millis);

CREATE TABLE IF NOT EXISTS rhc_study_data (
    id TEXT PRIMARY KEY,
    study_id TEXT NOT NULL UNIQUE REFERENCES studies(id) ON DELETE CASCADE,
    weight_kg REAL,
    height_cm REAL,
    bsa_m2 REAL,
    sao2_percent REAL,
    svo2_percent REAL,
    hemoglobin_gdl REAL,
    heart_rate_bpm REAL,
    vo2_ml_min REAL,
    vo2_mode TEXT,
    map_mmhg REAL,
    rap_mmhg REAL,
    pasp_mmhg REAL,
    padp_mmhg REAL,
    mpap_mmhg REAL,
    pawp_mmhg REAL,
    cardiac_output_lmin REAL,
    cardiac_index_lmin_m2 REAL,
    svr_wood REAL,
    svr_dyn REAL,
    pvr_wood REAL,
    pvr_dyn REAL,
    papi REAL,
    cardiac_power_w REAL,
    cardiac_power_index_w_m2 REAL,
    svr_units TEXT,
    pvr_units TEXT,
    co_method TEXT,
    created_at_millis INTEGER NOT NULL,
    updated_at_millis INTEGER NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_rhc_study_data_updated_at ON rhc_study_data(updated_at_millis);
"""

# Snapshot value columns, in table order (excludes id/study_id/audit columns)
RHC_VALUE_COLUMNS: tuple[str, ...] = (
    "weight_kg",
    "height_cm",
    "bsa_m2",
    "sao2_percent",
    "svo2_percent",
    "hemoglobin_gdl",
    "heart_rate_bpm",
    "vo2_ml_min",
    "vo2_mode",
    "map_mmhg",
    "rap_mmhg",
    "pasp_mmhg",
    "padp_mmhg",
    "mpap_mmhg",
    "pawp_mmhg",
    "cardiac_output_lmin",
    "cardiac_index_lmin_m2",
    "svr_wood",
    "svr_dyn",
    "pvr_wood",
    "pvr_dyn",
    "papi",
    "cardiac_power_w",
    "cardiac_power_index_w_m2",
    "svr_units",
    "pvr_units",
    "co_method",
)

INTERNAL_CODE_PREFIX = "RHC"


def _get_db_path() -> str:
    """Return the database path: RHC_DB_PATH if set, else the OS data dir."""
    explicit = os.getenv("RHC_DB_PATH", "")
    if explicit:
        return explicit
    data_dir = platformdirs.user_data_dir("RhcTools")
    os.makedirs(data_dir, exist_ok=True)
    return os.path.join(data_dir, "rhctools.db")


class Database:
    """SQLite-backed storage for patients, studies and RHC snapshots."""

    def __init__(self, db_path: str | None = None) -> None:
        self._db_path = db_path or _get_db_path()
        self._init_db()

    def _get_conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA foreign_keys=ON")
        return conn

    def _init_db(self) -> None:
        conn = self._get_conn()
        try:
            conn.executescript(_SCHEMA)
            conn.commit()
        finally:
            conn.close()

    # --- Settings ---

    def get_setting(self, key: str) -> str | None:
        conn = self._get_conn()
        try:
            row = conn.execute(
                "SELECT value FROM settings WHERE key = ?", (key,)
            ).fetchone()
            return row["value"] if row else None
        finally:
            conn.close()

    def set_setting(self, key: str, value: str) -> None:
        conn = self._get_conn()
        try:
            conn.execute(
                "INSERT OR REPLACE INTO settings (key, value, updated_at_millis) VALUES (?, ?, ?)",
                (key, value, _now_millis()),
            )
            conn.commit()
        finally:
            conn.close()

    def get_all_settings(self) -> dict[str, str]:
        conn = self._get_conn()
        try:
            rows = conn.execute("SELECT key, value FROM settings").fetchall()
            return {row["key"]: row["value"] for row in rows}
        finally:
            conn.close()

    def delete_setting(self, key: str) -> None:
        conn = self._get_conn()
        try:
            conn.execute("DELETE FROM settings WHERE key = ?", (key,))
            conn.commit()
        finally:
            conn.close()

    # --- Patients ---

    def _internal_code_exists(self, conn: sqlite3.Connection, code: str) -> bool:
        row = conn.execute(
            "SELECT 1 FROM patients WHERE internal_code = ? LIMIT 1", (code,)
        ).fetchone()
        return row is not None

    def generate_internal_code(self, prefix: str = INTERNAL_CODE_PREFIX, max_attempts: int = 12) -> str:
        """Return a unique human-readable code such as ``RHC-2026-8F3A1C2D``."""
        year = date.today().year
        conn = self._get_conn()
        try:
            for _ in range(max_attempts):
                code = f"{prefix}-{year}-{uuid.uuid4().hex[:8].upper()}"
                if not self._internal_code_exists(conn, code):
                    return code
            code = f"{prefix}-{year}-{uuid.uuid4().hex[:12].upper()}"
            if not self._internal_code_exists(conn, code):
                return code
        finally:
            conn.close()
        raise RuntimeError(
            f"Unable to generate a unique patient code after {max_attempts} attempts."
        )

    def create_patient(
        self,
        display_name: str | None = None,
        sex: str | None = None,
        birth_date_millis: int | None = None,
        weight_kg: float | None = None,
        height_cm: float | None = None,
        notes: str | None = None,
        internal_code: str | None = None,
    ) -> dict[str, Any]:
        code = internal_code or self.generate_internal_code()
        patient_id = str(uuid.uuid4())
        now = _now_millis()
        conn = self._get_conn()
        try:
            conn.execute(
                """INSERT INTO patients
                   (id, internal_code, display_name, sex, birth_date_millis,
                    weight_kg, height_cm, notes, created_at_millis, updated_at_millis)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (patient_id, code, display_name, sex, birth_date_millis,
                 weight_kg, height_cm, notes, now, now),
            )
            conn.commit()
        finally:
            conn.close()
        return self.get_patient(patient_id)  # type: ignore[return-value]

    def get_patient(self, patient_id: str) -> dict[str, Any] | None:
        conn = self._get_conn()
        try:
            row = conn.execute(
                "SELECT * FROM patients WHERE id = ?", (patient_id,)
            ).fetchone()
            return dict(row) if row else None
        finally:
            conn.close()

    # --- Studies ---

    def create_study(
        self,
        patient_id: str,
        study_type: str = "RHC",
        started_at_millis: int | None = None,
        notes: str | None = None,
    ) -> dict[str, Any]:
        study_id = str(uuid.uuid4())
        now = _now_millis()
        conn = self._get_conn()
        try:
            conn.execute(
                """INSERT INTO studies
                   (id, patient_id, type, started_at_millis, ended_at_millis, notes,
                    created_at_millis, updated_at_millis)
                   VALUES (?, ?, ?, ?, NULL, ?, ?, ?)""",
                (study_id, patient_id, study_type,
                 started_at_millis if started_at_millis is not None else now,
                 notes, now, now),
            )
            conn.commit()
        finally:
            conn.close()
        return self.get_study(study_id)  # type: ignore[return-value]

    def get_study(self, study_id: str) -> dict[str, Any] | None:
        conn = self._get_conn()
        try:
            row = conn.execute(
                "SELECT * FROM studies WHERE id = ?", (study_id,)
            ).fetchone()
            return dict(row) if row else None
        finally:
            conn.close()

    def end_study(self, study_id: str, ended_at_millis: int | None = None) -> bool:
        now = _now_millis()
        conn = self._get_conn()
        try:
            cursor = conn.execute(
                "UPDATE studies SET ended_at_millis = ?, updated_at_millis = ? WHERE id = ?",
                (ended_at_millis if ended_at_millis is not None else now, now, study_id),
            )
            conn.commit()
            return cursor.rowcount > 0
        finally:
            conn.close()

    def delete_study(self, study_id: str) -> bool:
        """Delete a study and its snapshot."""
        conn = self._get_conn()
        try:
            conn.execute("DELETE FROM rhc_study_data WHERE study_id = ?", (study_id,))
            cursor = conn.execute("DELETE FROM studies WHERE id = ?", (study_id,))
            conn.commit()
            return cursor.rowcount > 0
        finally:
            conn.close()

    def list_studies_with_rhc(self, patient_id: str) -> list[dict[str, Any]]:
        """Studies of a patient, newest first, each as ``{"study": ..., "rhc": ... | None}``."""
        conn = self._get_conn()
        try:
            studies = conn.execute(
                """SELECT * FROM studies WHERE patient_id = ?
                   ORDER BY started_at_millis DESC""",
                (patient_id,),
            ).fetchall()
            result = []
            for study in studies:
                rhc = conn.execute(
                    "SELECT * FROM rhc_study_data WHERE study_id = ? LIMIT 1",
                    (study["id"],),
                ).fetchone()
                result.append({"study": dict(study), "rhc": dict(rhc) if rhc else None})
            return result
        finally:
            conn.close()

    # --- RHC snapshots ---

    def get_rhc_by_study_id(self, study_id: str) -> dict[str, Any] | None:
        conn = self._get_conn()
        try:
            row = conn.execute(
                "SELECT * FROM rhc_study_data WHERE study_id = ? LIMIT 1", (study_id,)
            ).fetchone()
            return dict(row) if row else None
        finally:
            conn.close()

    def upsert_rhc_by_study_id(self, data: dict[str, Any]) -> dict[str, Any]:
        """Insert or replace the single snapshot of ``data["study_id"]``.

        An existing row keeps its ``id`` and ``created_at_millis``; every value
        column is overwritten, so missing keys become NULL.
        """
        study_id = data["study_id"]
        now = _now_millis()
        values = [data.get(col) for col in RHC_VALUE_COLUMNS]
        conn = self._get_conn()
        try:
            conn.execute("BEGIN IMMEDIATE")
            existing = conn.execute(
                "SELECT id, created_at_millis FROM rhc_study_data WHERE study_id = ?",
                (study_id,),
            ).fetchone()
            updated_at = data.get("updated_at_millis") or now
            if existing is None:
                row_id = data.get("id") or str(uuid.uuid4())
                created_at = data.get("created_at_millis") or updated_at
                cols = ", ".join(("id", "study_id", *RHC_VALUE_COLUMNS, "created_at_millis", "updated_at_millis"))
                placeholders = ", ".join("?" for _ in range(len(RHC_VALUE_COLUMNS) + 4))
                conn.execute(
                    f"INSERT INTO rhc_study_data ({cols}) VALUES ({placeholders})",
                    [row_id, study_id, *values, created_at, updated_at],
                )
            else:
                set_clause = ", ".join(f"{col} = ?" for col in RHC_VALUE_COLUMNS)
                conn.execute(
                    f"UPDATE rhc_study_data SET {set_clause}, updated_at_millis = ? WHERE id = ?",
                    [*values, updated_at, existing["id"]],
                )
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()
        return self.get_rhc_by_study_id(study_id)  # type: ignore[return-value]


_db_instance: Database | None = None


def get_db() -> Database:
    """Return the module-level Database singleton."""
    global _db_instance
    if _db_instance is None:
        _db_instance = Database()
    return _db_instance
