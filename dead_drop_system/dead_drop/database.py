#!/usr/bin/env python3
"""
Dead Drop Database Layer
SQLite-backed DeadDropStore so drops survive restarts and several scheduler
instances can share one registry.

Every mutator is a single conditional UPDATE, so compare-and-set, attempt
counting and lease acquisition are atomic at the database level.
"""
import sqlite3
import json
import logging
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Set

from dead_drop_system.core.clock import parse_timestamp
from dead_drop_system.core.datashapes import DeadDrop, DropStatus, FailureReason, PayloadEnvelope
from dead_drop_system.core.error_handler import DeadDropError, ValidationError
from dead_drop_system.dead_drop.trigger_evaluator import (
    DEFAULT_MAX_DEPTH,
    trigger_from_dict,
    trigger_to_dict,
)

logger = logging.getLogger(__name__)

# Columns compare_and_set may write alongside the status
_SETTABLE_COLUMNS = {
    'delivered_at', 'cancelled_at', 'failure_reason', 'purge_after',
    'lease_owner', 'lease_expires_at', 'last_evaluated_at',
}


def _to_db(value: Optional[datetime]) -> Optional[str]:
    """Fixed-width UTC text so timestamps compare correctly as strings"""
    if value is None:
        return None
    return value.astimezone(timezone.utc).strftime('%Y-%m-%dT%H:%M:%S.%f+00:00')


def _db_value(value: Any) -> Any:
    if isinstance(value, datetime):
        return _to_db(value)
    if isinstance(value, FailureReason):
        return value.value
    return value


class SQLiteDeadDropStore:
    """
    Persistent store for dead drop records
    Implements the DeadDropStore protocol on a single SQLite file
    """

    def __init__(self, db_path: str, max_trigger_depth: int = DEFAULT_MAX_DEPTH):
        """Initialize dead drop database"""
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.max_trigger_depth = max_trigger_depth
        # Rows whose stored data no longer decodes; listings skip them
        self.unreadable_ids: Set[str] = set()

        self._init_schema()
        logger.info(f"Dead drop database initialized at {self.db_path}")

    def _init_schema(self):
        """Create database tables and indexes"""
        with self._get_connection() as conn:
            conn.execute('''
                CREATE TABLE IF NOT EXISTS dead_drops (
                    id TEXT PRIMARY KEY,
                    creator_id TEXT NOT NULL,
                    recipient_id TEXT NOT NULL,
                    group_id TEXT,
                    ciphertext BLOB NOT NULL,
                    encryption_metadata TEXT NOT NULL,  -- JSON object
                    trigger_spec TEXT NOT NULL,         -- JSON trigger tree
                    status TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    delivered_at TEXT,
                    cancelled_at TEXT,
                    expires_at TEXT,
                    failure_reason TEXT,
                    require_confirmation INTEGER NOT NULL DEFAULT 0,
                    self_destruct INTEGER NOT NULL DEFAULT 0,
                    max_attempts INTEGER,
                    delivery_attempts INTEGER NOT NULL DEFAULT 0,
                    last_evaluated_at TEXT,
                    purge_after TEXT,
                    lease_owner TEXT,
                    lease_expires_at TEXT
                )
            ''')

            conn.execute('CREATE INDEX IF NOT EXISTS idx_status ON dead_drops(status)')
            conn.execute('CREATE INDEX IF NOT EXISTS idx_creator ON dead_drops(creator_id)')
            conn.execute('CREATE INDEX IF NOT EXISTS idx_recipient ON dead_drops(recipient_id)')

            conn.commit()

    @contextmanager
    def _get_connection(self):
        """Get database connection with proper error handling"""
        conn = None
        try:
            conn = sqlite3.connect(self.db_path, timeout=10.0)
            conn.row_factory = sqlite3.Row
            conn.execute('PRAGMA journal_mode = WAL')
            yield conn
        except Exception as e:
            if conn:
                conn.rollback()
            logger.error(f"Database error: {e}")
            raise
        finally:
            if conn:
                conn.close()

    def _row_to_drop(self, row: sqlite3.Row) -> DeadDrop:
        return DeadDrop(
            id=row['id'],
            creator_id=row['creator_id'],
            recipient_id=row['recipient_id'],
            group_id=row['group_id'],
            payload=PayloadEnvelope(
                ciphertext=bytes(row['ciphertext']),
                metadata=json.loads(row['encryption_metadata']),
            ),
            trigger=trigger_from_dict(json.loads(row['trigger_spec']), self.max_trigger_depth),
            status=DropStatus(row['status']),
            created_at=parse_timestamp(row['created_at']),
            delivered_at=parse_timestamp(row['delivered_at']),
            cancelled_at=parse_timestamp(row['cancelled_at']),
            expires_at=parse_timestamp(row['expires_at']),
            failure_reason=FailureReason(row['failure_reason']) if row['failure_reason'] else None,
            require_confirmation=bool(row['require_confirmation']),
            self_destruct=bool(row['self_destruct']),
            max_attempts=row['max_attempts'],
            delivery_attempts=row['delivery_attempts'],
            last_evaluated_at=parse_timestamp(row['last_evaluated_at']),
            purge_after=parse_timestamp(row['purge_after']),
            lease_owner=row['lease_owner'],
            lease_expires_at=parse_timestamp(row['lease_expires_at']),
        )

    def _rows_to_drops(self, rows) -> List[DeadDrop]:
        drops = []
        for row in rows:
            try:
                drops.append(self._row_to_drop(row))
            except (DeadDropError, ValueError, KeyError, TypeError) as e:
                if row['id'] not in self.unreadable_ids:
                    logger.error(f"Skipping unreadable dead drop row {row['id']}: {e}")
                self.unreadable_ids.add(row['id'])
        return drops

    # =========================================================================
    # CRUD
    # =========================================================================

    def insert(self, drop: DeadDrop) -> None:
        try:
            with self._get_connection() as conn:
                conn.execute('''
                    INSERT INTO dead_drops (
                        id, creator_id, recipient_id, group_id, ciphertext,
                        encryption_metadata, trigger_spec, status, created_at,
                        delivered_at, cancelled_at, expires_at, failure_reason,
                        require_confirmation, self_destruct, max_attempts,
                        delivery_attempts, last_evaluated_at, purge_after,
                        lease_owner, lease_expires_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ''', (
                    drop.id, drop.creator_id, drop.recipient_id, drop.group_id,
                    sqlite3.Binary(drop.payload.ciphertext),
                    json.dumps(drop.payload.metadata),
                    json.dumps(trigger_to_dict(drop.trigger)),
                    drop.status.value,
                    _to_db(drop.created_at),
                    _to_db(drop.delivered_at),
                    _to_db(drop.cancelled_at),
                    _to_db(drop.expires_at),
                    _db_value(drop.failure_reason),
                    int(drop.require_confirmation),
                    int(drop.self_destruct),
                    drop.max_attempts,
                    drop.delivery_attempts,
                    _to_db(drop.last_evaluated_at),
                    _to_db(drop.purge_after),
                    drop.lease_owner,
                    _to_db(drop.lease_expires_at),
                ))
                conn.commit()
        except sqlite3.IntegrityError as e:
            raise ValidationError(f"dead drop {drop.id} already exists") from e

    def get(self, drop_id: str) -> Optional[DeadDrop]:
        with self._get_connection() as conn:
            row = conn.execute('SELECT * FROM dead_drops WHERE id = ?', (drop_id,)).fetchone()
            return self._row_to_drop(row) if row else None

    def list_all(self) -> List[DeadDrop]:
        with self._get_connection() as conn:
            rows = conn.execute('SELECT * FROM dead_drops ORDER BY created_at').fetchall()
            return self._rows_to_drops(rows)

    def list_by_status(self, status: DropStatus) -> List[DeadDrop]:
        with self._get_connection() as conn:
            rows = conn.execute(
                'SELECT * FROM dead_drops WHERE status = ? ORDER BY created_at',
                (status.value,)
            ).fetchall()
            return self._rows_to_drops(rows)

    def list_for_user(self, user_id: str) -> List[DeadDrop]:
        with self._get_connection() as conn:
            rows = conn.execute(
                'SELECT * FROM dead_drops WHERE creator_id = ? OR recipient_id = ? ORDER BY created_at',
                (user_id, user_id)
            ).fetchall()
            return self._rows_to_drops(rows)

    def delete(self, drop_id: str) -> bool:
        with self._get_connection() as conn:
            cursor = conn.execute('DELETE FROM dead_drops WHERE id = ?', (drop_id,))
            conn.commit()
            return cursor.rowcount == 1

    # =========================================================================
    # ATOMIC MUTATORS
    # =========================================================================

    def compare_and_set(self, drop_id: str, expected_status: DropStatus,
                        new_status: DropStatus, fields: Dict[str, Any]) -> bool:
        unknown = set(fields) - _SETTABLE_COLUMNS
        if unknown:
            raise ValueError(f"cannot set columns {sorted(unknown)} through compare_and_set")

        assignments = ['status = ?'] + [f'{name} = ?' for name in fields]
        params = [new_status.value] + [_db_value(v) for v in fields.values()]
        params += [drop_id, expected_status.value]

        with self._get_connection() as conn:
            cursor = conn.execute(
                f"UPDATE dead_drops SET {', '.join(assignments)} WHERE id = ? AND status = ?",
                params
            )
            conn.commit()
            return cursor.rowcount == 1

    def increment_attempts(self, drop_id: str) -> Optional[int]:
        with self._get_connection() as conn:
            cursor = conn.execute(
                "UPDATE dead_drops SET delivery_attempts = delivery_attempts + 1 "
                "WHERE id = ? AND status = ?",
                (drop_id, DropStatus.PENDING.value)
            )
            if cursor.rowcount != 1:
                conn.rollback()
                return None
            row = conn.execute(
                'SELECT delivery_attempts FROM dead_drops WHERE id = ?', (drop_id,)
            ).fetchone()
            conn.commit()
            return row['delivery_attempts']

    def touch(self, drop_id: str, at: datetime) -> None:
        with self._get_connection() as conn:
            conn.execute('UPDATE dead_drops SET last_evaluated_at = ? WHERE id = ?',
                         (_to_db(at), drop_id))
            conn.commit()

    def try_acquire_lease(self, drop_id: str, owner: str, now: datetime, ttl: timedelta) -> bool:
        with self._get_connection() as conn:
            cursor = conn.execute('''
                UPDATE dead_drops SET lease_owner = ?, lease_expires_at = ?
                WHERE id = ? AND (
                    lease_owner IS NULL OR lease_owner = ?
                    OR lease_expires_at IS NULL OR lease_expires_at <= ?
                )
            ''', (owner, _to_db(now + ttl), drop_id, owner, _to_db(now)))
            conn.commit()
            return cursor.rowcount == 1

    def release_lease(self, drop_id: str, owner: str) -> None:
        with self._get_connection() as conn:
            conn.execute(
                'UPDATE dead_drops SET lease_owner = NULL, lease_expires_at = NULL '
                'WHERE id = ? AND lease_owner = ?',
                (drop_id, owner)
            )
            conn.commit()

    def counts_by_status(self) -> Dict[str, int]:
        counts = {status.value: 0 for status in DropStatus}
        with self._get_connection() as conn:
            for row in conn.execute('SELECT status, COUNT(*) AS n FROM dead_drops GROUP BY status'):
                counts[row['status']] = row['n']
        return counts
