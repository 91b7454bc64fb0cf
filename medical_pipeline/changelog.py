"""
Change-log (stream) over the STAGING layer and the consumer offsets that
track how far each reader has got.

Entries are append-only and ordered by seq. A consumer's offset is the seq
(or, for the transformer, the RAW rowid) of the last item it fully handled.
"""

import json
import sqlite3
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List

from medical_pipeline.warehouse import CHANGELOG_TABLE, OFFSETS_TABLE, now_timestamp


@dataclass(frozen=True)
class ChangeEntry:
    seq: int
    entity: str
    payload: Dict[str, Any]
    captured_at: str


def get_offset(conn: sqlite3.Connection, consumer: str) -> int:
    """Return the consumer's offset, 0 when it has never committed one."""
    row = conn.execute(
        f"SELECT position FROM {OFFSETS_TABLE} WHERE consumer = ?", (consumer,)
    ).fetchone()
    return row[0] if row else 0


def set_offset(conn: sqlite3.Connection, consumer: str, position: int) -> None:
    conn.execute(
        f'''
        INSERT INTO {OFFSETS_TABLE} (consumer, position, updated_at) VALUES (?, ?, ?)
        ON CONFLICT(consumer) DO UPDATE SET
            position = excluded.position,
            updated_at = excluded.updated_at
        ''',
        (consumer, position, now_timestamp()),
    )


def append_changes(conn: sqlite3.Connection, entity: str, payloads: Iterable[Dict[str, Any]]) -> int:
    """
    Append staging rows to the change-log.

    Returns:
        Number of entries written
    """
    captured_at = now_timestamp()
    rows = [(entity, json.dumps(payload), captured_at) for payload in payloads]
    conn.executemany(
        f"INSERT INTO {CHANGELOG_TABLE} (entity, payload, captured_at) VALUES (?, ?, ?)",
        rows,
    )
    return len(rows)


def read_changes(conn: sqlite3.Connection, after_seq: int) -> List[ChangeEntry]:
    """Read entries with seq greater than after_seq, oldest first."""
    query = f"SELECT seq, entity, payload, captured_at FROM {CHANGELOG_TABLE} WHERE seq > ? ORDER BY seq"
    return [
        ChangeEntry(seq=seq, entity=entity, payload=json.loads(payload), captured_at=captured_at)
        for seq, entity, payload, captured_at in conn.execute(query, (after_seq,))
    ]


def pending_count(conn: sqlite3.Connection, after_seq: int) -> int:
    return conn.execute(
        f"SELECT COUNT(*) FROM {CHANGELOG_TABLE} WHERE seq > ?", (after_seq,)
    ).fetchone()[0]
