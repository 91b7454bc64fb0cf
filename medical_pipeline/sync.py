"""
Incremental sync from the STAGING change-log into dimension and fact tables.

Each tick reads every change-log entry past the consumer offset, upserts the
matching dimension and fact rows, and advances the offset, all in a single
transaction. If any insert fails, nothing is written and the offset stays
where it was, so the next tick replays the same entries. Fact inserts are
upserts on the natural key, which makes those replays idempotent.
"""

import sqlite3
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional

from medical_pipeline import changelog
from medical_pipeline.changelog import ChangeEntry
from medical_pipeline.config import DEFAULT_SYNC_INTERVAL
from medical_pipeline.errors import SyncError
from medical_pipeline.warehouse import Warehouse, now_timestamp
from utils.logger import setup_logger

logger = setup_logger("IncrementalSync")

DEFAULT_CONSUMER = "fact_sync"

# Dimensions must land before the facts in the same batch that reference them
ENTITY_ORDER = {"patients": 0, "treatments": 1, "claims": 2}


class SyncState(Enum):
    PENDING = "pending"
    DRAINED = "drained"


@dataclass(frozen=True)
class SyncResult:
    changes_applied: int
    rows_written: Dict[str, int]
    offset: int
    state: SyncState


def _upsert_patient(conn: sqlite3.Connection, row: Dict[str, Any], loaded_at: str) -> None:
    conn.execute(
        '''
        INSERT INTO dim_patient (patient_id, name, age, gender, latitude, longitude, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(patient_id) DO UPDATE SET
            name = excluded.name,
            age = excluded.age,
            gender = excluded.gender,
            latitude = excluded.latitude,
            longitude = excluded.longitude,
            updated_at = excluded.updated_at
        ''',
        (row["patient_id"], row.get("name"), row.get("age"), row.get("gender"),
         row.get("latitude"), row.get("longitude"), loaded_at),
    )


def _upsert_claim(conn: sqlite3.Connection, row: Dict[str, Any], loaded_at: str) -> None:
    conn.execute(
        '''
        INSERT INTO fact_claim (claim_id, patient_id, claim_amount, claim_type, claim_date, status, loaded_at)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(claim_id) DO UPDATE SET
            patient_id = excluded.patient_id,
            claim_amount = excluded.claim_amount,
            claim_type = excluded.claim_type,
            claim_date = excluded.claim_date,
            status = excluded.status,
            loaded_at = excluded.loaded_at
        ''',
        (row["claim_id"], row["patient_id"], row["claim_amount"], row.get("claim_type"),
         row.get("claim_date"), row.get("status"), loaded_at),
    )


def _upsert_treatment(conn: sqlite3.Connection, row: Dict[str, Any], loaded_at: str) -> Dict[str, int]:
    written = {"fact_treatment": 1, "fact_diagnosis": 1, "dim_symptom": 0}

    symptom = row.get("symptom")
    if symptom is not None:
        cursor = conn.execute(
            "INSERT INTO dim_symptom (symptom, first_seen_at) VALUES (?, ?) ON CONFLICT(symptom) DO NOTHING",
            (symptom, loaded_at),
        )
        written["dim_symptom"] = cursor.rowcount

    conn.execute(
        '''
        INSERT INTO fact_treatment (treatment_id, patient_id, department, treatment, cost, treatment_date, loaded_at)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(treatment_id) DO UPDATE SET
            patient_id = excluded.patient_id,
            department = excluded.department,
            treatment = excluded.treatment,
            cost = excluded.cost,
            treatment_date = excluded.treatment_date,
            loaded_at = excluded.loaded_at
        ''',
        (row["treatment_id"], row["patient_id"], row.get("department"), row.get("treatment"),
         row["cost"], row.get("treatment_date"), loaded_at),
    )
    conn.execute(
        '''
        INSERT INTO fact_diagnosis (treatment_id, patient_id, symptom, diagnosis, diagnosed_on, loaded_at)
        VALUES (?, ?, ?, ?, ?, ?)
        ON CONFLICT(treatment_id) DO UPDATE SET
            patient_id = excluded.patient_id,
            symptom = excluded.symptom,
            diagnosis = excluded.diagnosis,
            diagnosed_on = excluded.diagnosed_on,
            loaded_at = excluded.loaded_at
        ''',
        (row["treatment_id"], row["patient_id"], symptom, row.get("diagnosis"),
         row.get("treatment_date"), loaded_at),
    )
    return written


class IncrementalSync:
    """Consumes the staging change-log into dimension and fact tables."""

    def __init__(self, warehouse: Warehouse, consumer: str = DEFAULT_CONSUMER):
        self.warehouse = warehouse
        self.consumer = consumer

    def state(self) -> SyncState:
        """PENDING while unconsumed change-log entries exist, else DRAINED."""
        conn = self.warehouse.connect()
        try:
            offset = changelog.get_offset(conn, self.consumer)
            if changelog.pending_count(conn, offset) > 0:
                return SyncState.PENDING
            return SyncState.DRAINED
        finally:
            conn.close()

    def offset(self) -> int:
        conn = self.warehouse.connect()
        try:
            return changelog.get_offset(conn, self.consumer)
        finally:
            conn.close()

    def _apply(self, conn: sqlite3.Connection, changes: List[ChangeEntry]) -> Dict[str, int]:
        written = {"dim_patient": 0, "dim_symptom": 0, "fact_claim": 0, "fact_treatment": 0, "fact_diagnosis": 0}
        loaded_at = now_timestamp()
        ordered = sorted(changes, key=lambda change: (ENTITY_ORDER.get(change.entity, 99), change.seq))
        for change in ordered:
            if change.entity == "patients":
                _upsert_patient(conn, change.payload, loaded_at)
                written["dim_patient"] += 1
            elif change.entity == "claims":
                _upsert_claim(conn, change.payload, loaded_at)
                written["fact_claim"] += 1
            elif change.entity == "treatments":
                for table, count in _upsert_treatment(conn, change.payload, loaded_at).items():
                    written[table] += count
            else:
                logger.warning(f"Ignoring change-log entry {change.seq} for unknown entity '{change.entity}'")
        return written

    def tick(self) -> SyncResult:
        """
        Drain all pending change-log entries into dimension and fact tables.

        Returns:
            SyncResult describing what was applied

        Raises:
            SyncError: If any insert fails; the offset was not advanced
        """
        try:
            with self.warehouse.transaction() as conn:
                offset = changelog.get_offset(conn, self.consumer)
                changes = changelog.read_changes(conn, offset)
                if not changes:
                    logger.info("Change-log drained; nothing to sync")
                    return SyncResult(0, {}, offset, SyncState.DRAINED)

                written = self._apply(conn, changes)
                new_offset = changes[-1].seq
                changelog.set_offset(conn, self.consumer, new_offset)
        except sqlite3.Error as e:
            logger.error(f"Sync tick failed; offset left at previous position: {e}")
            raise SyncError(f"Incremental sync failed: {e}") from e

        logger.info(f"Synced {len(changes)} changes up to seq {new_offset}: {written}")
        return SyncResult(len(changes), written, new_offset, self.state())


class SyncScheduler:
    """
    Runs IncrementalSync.tick on fixed interval boundaries in a background
    thread. Ticks never overlap: a tick that finds the previous one still
    running is skipped.
    """

    def __init__(self, sync: IncrementalSync, interval_seconds: int = DEFAULT_SYNC_INTERVAL):
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self.sync = sync
        self.interval_seconds = interval_seconds
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def seconds_until_next_tick(self, now: Optional[float] = None) -> float:
        now = time.time() if now is None else now
        return self.interval_seconds - (now % self.interval_seconds)

    def run_once(self) -> Optional[SyncResult]:
        """
        Run one tick unless another is in progress.

        Returns:
            The tick's SyncResult, or None when skipped or failed
        """
        if not self._lock.acquire(blocking=False):
            logger.warning("Previous sync tick still running; skipping this boundary")
            return None
        try:
            return self.sync.tick()
        except SyncError as e:
            logger.error(f"Scheduled sync tick failed, will retry next boundary: {e}")
            return None
        finally:
            self._lock.release()

    def _run(self) -> None:
        while not self._stop_event.wait(self.seconds_until_next_tick()):
            self.run_once()

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="sync-scheduler", daemon=True)
        self._thread.start()
        logger.info(f"Sync scheduler started with a {self.interval_seconds}s interval")

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info("Sync scheduler stopped")

    def run_forever(self) -> None:
        """Block running scheduled ticks until interrupted."""
        self.start()
        try:
            while self._thread is not None and self._thread.is_alive():
                self._thread.join(1.0)
        except KeyboardInterrupt:
            logger.info("Interrupted; stopping sync scheduler")
        finally:
            self.stop()
