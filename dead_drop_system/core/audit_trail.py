#!/usr/bin/env python3
"""
audit_trail.py - Append-only, hash-chained audit log for dead drop transitions

Every create/cancel/deliver/fail/expire/purge goes through here. The log is
tamper-evident:
    - Each entry links to the previous via SHA-256 (previous_hash)
    - Each entry is HMAC-signed for provenance
    - verify_chain() walks the whole thing and reports the first bad entry

Storage: JSON Lines (.jsonl), one entry per line, append-only. Pass
storage_path=None for a memory-only trail (tests, embedded use).

Usage:
    trail = AuditTrail(storage_path="/var/lib/dead_drop/audit.jsonl")
    trail.record(AuditEvent(AuditEventType.CREATED, drop.id, drop.creator_id, now))
    valid, bad_seq = trail.verify_chain()
"""

import hashlib
import hmac
import json
import logging
import os
import secrets
import threading
from dataclasses import asdict
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, Tuple

from dead_drop_system.core.datashapes import (
    AuditEntry,
    AuditEvent,
    AuditEventType,
    AuditSeverity,
)
from dead_drop_system.core.error_handler import AuditWriteError

logger = logging.getLogger(__name__)


class AuditSink(Protocol):
    """What the engine needs from an audit destination"""

    def record(self, event: AuditEvent) -> None:
        ...


class AuditTrail:
    """
    Immutable append-only audit log with hash chain verification.

    Thread-safe: the scheduler thread, dispatcher workers and HTTP handlers
    all record into the same trail.
    """

    def __init__(self, storage_path: Optional[str] = None, signing_key: Optional[str] = None):
        """
        Args:
            storage_path: JSONL file to append to. None keeps the trail in memory only.
            signing_key: HMAC key. Defaults to a key file next to the log
                (or a random per-process key for memory-only trails).
        """
        self.storage_path = storage_path
        if storage_path:
            Path(storage_path).parent.mkdir(parents=True, exist_ok=True)

        if signing_key is None:
            signing_key = self._get_or_create_signing_key()
        self._signing_key = signing_key.encode() if isinstance(signing_key, str) else signing_key

        self._entries: List[AuditEntry] = []
        self._sequence = 0
        self._lock = threading.Lock()
        self.load_warnings: List[str] = []

        self._load()

    def _get_or_create_signing_key(self) -> str:
        if not self.storage_path:
            return secrets.token_hex(32)

        key_path = Path(self.storage_path).parent / ".audit_key"
        if key_path.exists():
            return key_path.read_text().strip()

        key = secrets.token_hex(32)
        key_path.write_text(key)
        os.chmod(key_path, 0o600)
        return key

    def _load(self):
        """
        Load an existing log from disk.

        Truncated or corrupted lines are skipped and noted in load_warnings;
        verify_chain() will then report where the chain breaks.
        """
        if not self.storage_path or not os.path.exists(self.storage_path):
            return

        with open(self.storage_path, 'r') as f:
            for line_number, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    data = json.loads(line)
                    data['event_type'] = AuditEventType(data['event_type'])
                    data['severity'] = AuditSeverity(data['severity'])
                    self._entries.append(AuditEntry(**data))
                except json.JSONDecodeError as e:
                    self.load_warnings.append(f"Line {line_number}: Corrupted JSON, skipped ({e})")
                except (KeyError, ValueError, TypeError) as e:
                    self.load_warnings.append(f"Line {line_number}: Invalid entry data, skipped ({e})")

        if self._entries:
            self._sequence = self._entries[-1].sequence

        for warning in self.load_warnings:
            logger.warning(f"Audit trail {self.storage_path}: {warning}")

    def _save_entry(self, entry: AuditEntry) -> None:
        if not self.storage_path:
            return

        entry_dict = asdict(entry)
        entry_dict['event_type'] = entry.event_type.value
        entry_dict['severity'] = entry.severity.value

        try:
            with open(self.storage_path, 'a') as f:
                f.write(json.dumps(entry_dict) + '\n')
                f.flush()
                os.fsync(f.fileno())
        except OSError as e:
            raise AuditWriteError(f"Failed to write audit entry: {e}") from e

    def _compute_hash(self, data: Dict) -> str:
        canonical = json.dumps(data, sort_keys=True, separators=(',', ':'))
        return hashlib.sha256(canonical.encode()).hexdigest()

    def _compute_signature(self, data: Dict) -> str:
        canonical = json.dumps(data, sort_keys=True, separators=(',', ':'))
        return hmac.new(self._signing_key, canonical.encode(), hashlib.sha256).hexdigest()

    def _content_for_signing(self, entry: AuditEntry) -> Dict:
        return {
            'sequence': entry.sequence,
            'timestamp': entry.timestamp,
            'previous_hash': entry.previous_hash,
            'event_type': entry.event_type.value,
            'subject_id': entry.subject_id,
            'actor': entry.actor,
            'severity': entry.severity.value,
            'success': entry.success,
            'payload': entry.payload,
        }

    def _content_for_hashing(self, entry: AuditEntry) -> Dict:
        content = self._content_for_signing(entry)
        content['signature'] = entry.signature
        return content

    # =========================================================================
    # PUBLIC API - Record and Query
    # =========================================================================

    def record(self, event: AuditEvent) -> AuditEntry:
        """
        Append an event. This is the only way in; no updates, no deletes.

        Raises:
            AuditWriteError: the entry could not be persisted. In-memory
                state is left untouched in that case.
        """
        with self._lock:
            next_sequence = self._sequence + 1
            previous_hash = self._entries[-1].entry_hash if self._entries else ""

            entry = AuditEntry(
                sequence=next_sequence,
                timestamp=event.timestamp.isoformat(),
                previous_hash=previous_hash,
                event_type=event.event_type,
                subject_id=event.subject_id,
                actor=event.actor,
                severity=event.severity,
                success=event.success,
                payload=_json_safe(event.metadata),
            )
            entry.signature = self._compute_signature(self._content_for_signing(entry))
            entry.entry_hash = self._compute_hash(self._content_for_hashing(entry))

            # Disk first, memory second: a failed write must not desync the two
            self._save_entry(entry)

            self._sequence = next_sequence
            self._entries.append(entry)

        logger.debug(f"Audit #{entry.sequence} {entry.event_type.value} {entry.subject_id}")
        return entry

    def get_entries(self, start_seq: Optional[int] = None, end_seq: Optional[int] = None) -> List[AuditEntry]:
        """Entries in sequence range (inclusive)"""
        with self._lock:
            entries = list(self._entries)
        if start_seq is not None:
            entries = [e for e in entries if e.sequence >= start_seq]
        if end_seq is not None:
            entries = [e for e in entries if e.sequence <= end_seq]
        return entries

    def get_by_subject(self, subject_id: str) -> List[AuditEntry]:
        """Everything that happened to one drop (or user, for tracker events)"""
        return [e for e in self.get_entries() if e.subject_id == subject_id]

    get_by_drop = get_by_subject

    def get_by_type(self, event_type: AuditEventType) -> List[AuditEntry]:
        return [e for e in self.get_entries() if e.event_type == event_type]

    def get_root_hash(self) -> str:
        with self._lock:
            return self._entries[-1].entry_hash if self._entries else ""

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    # =========================================================================
    # VERIFICATION
    # =========================================================================

    def verify_chain(self) -> Tuple[bool, Optional[int]]:
        """
        Walk the entire chain and verify integrity.

        Returns:
            (True, None) if valid
            (False, sequence) if invalid - sequence is the first broken entry
        """
        previous_hash = ""
        for entry in self.get_entries():
            if entry.previous_hash != previous_hash:
                return False, entry.sequence

            expected_sig = self._compute_signature(self._content_for_signing(entry))
            if not hmac.compare_digest(entry.signature, expected_sig):
                return False, entry.sequence

            expected_hash = self._compute_hash(self._content_for_hashing(entry))
            if entry.entry_hash != expected_hash:
                return False, entry.sequence

            previous_hash = entry.entry_hash

        return True, None

    # =========================================================================
    # STATISTICS
    # =========================================================================

    def stats(self) -> Dict[str, Any]:
        by_type: Dict[str, int] = {}
        by_severity: Dict[str, int] = {}
        entries = self.get_entries()

        for entry in entries:
            by_type[entry.event_type.value] = by_type.get(entry.event_type.value, 0) + 1
            by_severity[entry.severity.value] = by_severity.get(entry.severity.value, 0) + 1

        return {
            'total_entries': len(entries),
            'by_type': by_type,
            'by_severity': by_severity,
            'first_timestamp': entries[0].timestamp if entries else None,
            'last_timestamp': entries[-1].timestamp if entries else None,
            'root_hash': entries[-1].entry_hash if entries else "",
            'storage_path': self.storage_path,
            'load_warnings': len(self.load_warnings),
        }


def _json_safe(value: Any) -> Any:
    """Round-trip through JSON so the payload hashes the same after a reload"""
    return json.loads(json.dumps(value, default=str))
