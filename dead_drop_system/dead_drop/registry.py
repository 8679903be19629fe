#!/usr/bin/env python3
"""
DeadDropRegistry - CRUD and state-machine authority for dead drops

The registry is the only thing allowed to change a drop's status. Every
change is a compare-and-swap against the status the caller expects, checked
against ALLOWED_TRANSITIONS, and reported to the audit sink once it lands.
That is what stops a user's cancel and a concurrently firing delivery from
both winning.

Storage sits behind DeadDropStore. InMemoryDeadDropStore is the test double;
SQLiteDeadDropStore (database.py) is the persistent one.
"""

import copy
import logging
import threading
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Protocol

from dead_drop_system.core.audit_trail import AuditSink
from dead_drop_system.core.clock import Clock, ensure_utc, utc_now
from dead_drop_system.core.datashapes import (
    AuditEvent,
    AuditEventType,
    AuditSeverity,
    DeadDrop,
    DropStatus,
    FailureReason,
    PayloadEnvelope,
    is_transition_allowed,
)
from dead_drop_system.core.error_handler import (
    AuditWriteError,
    ErrorCategory,
    ErrorHandler,
    ErrorSeverity,
    NotFoundError,
    ValidationError,
)
from dead_drop_system.dead_drop.trigger_evaluator import (
    DEFAULT_MAX_DEPTH,
    coerce_trigger,
    describe_trigger,
)

logger = logging.getLogger(__name__)

DEFAULT_EXPIRY = timedelta(days=30)
DEFAULT_SELF_DESTRUCT_GRACE = timedelta(seconds=60)


# =============================================================================
# STORE INTERFACE
# =============================================================================

class DeadDropStore(Protocol):
    """Repository for drop records. All mutators are atomic per drop."""

    def insert(self, drop: DeadDrop) -> None: ...

    def get(self, drop_id: str) -> Optional[DeadDrop]: ...

    def list_all(self) -> List[DeadDrop]: ...

    def list_by_status(self, status: DropStatus) -> List[DeadDrop]: ...

    def list_for_user(self, user_id: str) -> List[DeadDrop]: ...

    def compare_and_set(self, drop_id: str, expected_status: DropStatus,
                        new_status: DropStatus, fields: Dict[str, Any]) -> bool: ...

    def increment_attempts(self, drop_id: str) -> Optional[int]: ...

    def touch(self, drop_id: str, at: datetime) -> None: ...

    def delete(self, drop_id: str) -> bool: ...

    def try_acquire_lease(self, drop_id: str, owner: str, now: datetime, ttl: timedelta) -> bool: ...

    def release_lease(self, drop_id: str, owner: str) -> None: ...

    def counts_by_status(self) -> Dict[str, int]: ...


class InMemoryDeadDropStore:
    """
    Dict-backed store. Hands out deep copies so callers can never mutate
    a record behind the lock's back.
    """

    def __init__(self):
        self._drops: Dict[str, DeadDrop] = {}
        self._lock = threading.RLock()

    def insert(self, drop: DeadDrop) -> None:
        with self._lock:
            if drop.id in self._drops:
                raise ValidationError(f"dead drop {drop.id} already exists")
            self._drops[drop.id] = copy.deepcopy(drop)

    def get(self, drop_id: str) -> Optional[DeadDrop]:
        with self._lock:
            drop = self._drops.get(drop_id)
            return copy.deepcopy(drop) if drop else None

    def list_all(self) -> List[DeadDrop]:
        with self._lock:
            return [copy.deepcopy(d) for d in self._drops.values()]

    def list_by_status(self, status: DropStatus) -> List[DeadDrop]:
        with self._lock:
            return [copy.deepcopy(d) for d in self._drops.values() if d.status == status]

    def list_for_user(self, user_id: str) -> List[DeadDrop]:
        with self._lock:
            return [copy.deepcopy(d) for d in self._drops.values()
                    if d.creator_id == user_id or d.recipient_id == user_id]

    def compare_and_set(self, drop_id: str, expected_status: DropStatus,
                        new_status: DropStatus, fields: Dict[str, Any]) -> bool:
        with self._lock:
            drop = self._drops.get(drop_id)
            if drop is None or drop.status != expected_status:
                return False
            drop.status = new_status
            for name, value in fields.items():
                setattr(drop, name, value)
            return True

    def increment_attempts(self, drop_id: str) -> Optional[int]:
        with self._lock:
            drop = self._drops.get(drop_id)
            if drop is None or drop.status != DropStatus.PENDING:
                return None
            drop.delivery_attempts += 1
            return drop.delivery_attempts

    def touch(self, drop_id: str, at: datetime) -> None:
        with self._lock:
            drop = self._drops.get(drop_id)
            if drop is not None:
                drop.last_evaluated_at = at

    def delete(self, drop_id: str) -> bool:
        with self._lock:
            return self._drops.pop(drop_id, None) is not None

    def try_acquire_lease(self, drop_id: str, owner: str, now: datetime, ttl: timedelta) -> bool:
        with self._lock:
            drop = self._drops.get(drop_id)
            if drop is None:
                return False
            held_by_other = (drop.lease_owner is not None
                             and drop.lease_owner != owner
                             and drop.lease_expires_at is not None
                             and drop.lease_expires_at > now)
            if held_by_other:
                return False
            drop.lease_owner = owner
            drop.lease_expires_at = now + ttl
            return True

    def release_lease(self, drop_id: str, owner: str) -> None:
        with self._lock:
            drop = self._drops.get(drop_id)
            if drop is not None and drop.lease_owner == owner:
                drop.lease_owner = None
                drop.lease_expires_at = None

    def counts_by_status(self) -> Dict[str, int]:
        counts = {status.value: 0 for status in DropStatus}
        with self._lock:
            for drop in self._drops.values():
                counts[drop.status.value] += 1
        return counts


# =============================================================================
# REGISTRY
# =============================================================================

class DeadDropRegistry:
    """
    Owns drop records and every status transition they go through.

    Usage:
        registry = DeadDropRegistry(InMemoryDeadDropStore(), AuditTrail())
        drop = registry.create("alice", "bob", envelope,
                               {"type": "time", "delay_minutes": 60})
        registry.cancel(drop.id, "alice")
    """

    def __init__(self,
                 store: DeadDropStore,
                 audit: AuditSink,
                 clock: Optional[Clock] = None,
                 default_expiry: timedelta = DEFAULT_EXPIRY,
                 max_trigger_depth: int = DEFAULT_MAX_DEPTH,
                 self_destruct_grace: timedelta = DEFAULT_SELF_DESTRUCT_GRACE,
                 error_handler: Optional[ErrorHandler] = None):
        self.store = store
        self.audit = audit
        self.clock = clock or utc_now
        self.error_handler = error_handler or ErrorHandler(clock=self.clock)
        self.default_expiry = default_expiry
        self.max_trigger_depth = max_trigger_depth
        self.self_destruct_grace = self_destruct_grace

    # =========================================================================
    # CREATE / READ
    # =========================================================================

    def create(self,
               creator_id: str,
               recipient_id: str,
               payload: PayloadEnvelope,
               trigger: Any,
               *,
               group_id: Optional[str] = None,
               require_confirmation: bool = False,
               self_destruct: bool = False,
               max_attempts: Optional[int] = None,
               expires_at: Optional[datetime] = None) -> DeadDrop:
        """
        Validate and persist a new pending drop.

        Args:
            creator_id: Who is leaving the drop (the only one who may cancel it)
            recipient_id: Who receives it when the trigger fires
            payload: Already-encrypted envelope, stored as-is
            trigger: Trigger dataclass or its dict wire form
            max_attempts: Delivery attempts before giving up (None = unbounded)
            expires_at: Defaults to creation time + default_expiry

        Raises:
            ValidationError: on any malformed input
        """
        if not creator_id:
            raise ValidationError("creator_id is required")
        if not recipient_id:
            raise ValidationError("recipient_id is required")
        if not isinstance(payload, PayloadEnvelope):
            raise ValidationError("payload must be a PayloadEnvelope")
        if not isinstance(payload.ciphertext, (bytes, bytearray)) or not payload.ciphertext:
            raise ValidationError("payload ciphertext is required")
        if max_attempts is not None:
            if isinstance(max_attempts, bool) or not isinstance(max_attempts, int) or max_attempts < 1:
                raise ValidationError("max_attempts must be a positive integer")

        parsed_trigger = coerce_trigger(trigger, self.max_trigger_depth)

        now = self.clock()
        if expires_at is None:
            expires_at = now + self.default_expiry
        else:
            expires_at = ensure_utc(expires_at)
            if expires_at <= now:
                raise ValidationError("expires_at must be in the future")

        drop = DeadDrop(
            id=f"dd_{uuid.uuid4().hex}",
            creator_id=creator_id,
            recipient_id=recipient_id,
            group_id=group_id,
            payload=payload,
            trigger=parsed_trigger,
            status=DropStatus.PENDING,
            created_at=now,
            expires_at=expires_at,
            require_confirmation=bool(require_confirmation),
            self_destruct=bool(self_destruct),
            max_attempts=max_attempts,
        )
        audit_metadata = {
            'recipient_id': recipient_id,
            'trigger_type': parsed_trigger.type.value,
            'trigger_summary': describe_trigger(parsed_trigger),
            'expires_at': expires_at.isoformat(),
        }
        self.store.insert(drop)

        self._emit(AuditEventType.CREATED, drop.id, creator_id, now, metadata=audit_metadata)
        logger.info(f"Created dead drop {drop.id} ({parsed_trigger.type.value}) for {recipient_id}")
        return drop

    def get(self, drop_id: str) -> Optional[DeadDrop]:
        return self.store.get(drop_id)

    def get_or_raise(self, drop_id: str) -> DeadDrop:
        drop = self.store.get(drop_id)
        if drop is None:
            raise NotFoundError(f"dead drop {drop_id} not found")
        return drop

    def list_for_user(self, user_id: str, include_cancelled: bool = False,
                      status: Optional[DropStatus] = None) -> List[DeadDrop]:
        """
        Drops the user created or will receive, newest first.

        Cancelled drops are hidden unless include_cancelled is set; delivered
        and failed ones are always listed. An explicit status filter wins
        over include_cancelled.
        """
        drops = self.store.list_for_user(user_id)
        if status is not None:
            drops = [d for d in drops if d.status == status]
        elif not include_cancelled:
            drops = [d for d in drops if d.status != DropStatus.CANCELLED]
        drops.sort(key=lambda d: d.created_at, reverse=True)
        return drops

    def list_pending(self) -> List[DeadDrop]:
        return self.store.list_by_status(DropStatus.PENDING)

    # =========================================================================
    # TRANSITIONS
    # =========================================================================

    def cancel(self, drop_id: str, requester_id: str) -> bool:
        """Creator-only, pending-only. Anything else is a no-op returning False."""
        drop = self.store.get(drop_id)
        if drop is None:
            logger.debug(f"Cancel of unknown drop {drop_id}")
            return False
        if drop.creator_id != requester_id:
            logger.debug(f"Cancel of {drop_id} refused for non-creator {requester_id}")
            return False

        now = self.clock()
        if not self._transition(drop_id, DropStatus.PENDING, DropStatus.CANCELLED,
                                {'cancelled_at': now}):
            return False

        self._emit(AuditEventType.CANCELLED, drop_id, requester_id, now)
        logger.info(f"Dead drop {drop_id} cancelled by {requester_id}")
        return True

    def expire(self, drop_id: str, now: datetime) -> bool:
        if not self._transition(drop_id, DropStatus.PENDING, DropStatus.FAILED,
                                {'failure_reason': FailureReason.EXPIRED}):
            return False

        self._emit(AuditEventType.EXPIRED, drop_id, "scheduler", now,
                   severity=AuditSeverity.WARNING, success=False,
                   metadata={'failure_reason': FailureReason.EXPIRED.value})
        logger.warning(f"Dead drop {drop_id} expired before its trigger fired")
        return True

    def mark_delivered(self, drop_id: str, now: datetime, attempts: int = 0) -> bool:
        drop = self.store.get(drop_id)
        if drop is None:
            return False

        fields: Dict[str, Any] = {'delivered_at': now}
        if drop.self_destruct:
            fields['purge_after'] = now + self.self_destruct_grace

        if not self._transition(drop_id, DropStatus.PENDING, DropStatus.DELIVERED, fields):
            return False

        self._emit(AuditEventType.DELIVERED, drop_id, "scheduler", now, metadata={
            'recipient_id': drop.recipient_id,
            'attempts': attempts,
            'self_destruct': drop.self_destruct,
        })
        logger.info(f"Dead drop {drop_id} delivered to {drop.recipient_id} (attempt {attempts})")
        return True

    def mark_failed(self, drop_id: str, reason: FailureReason, now: datetime, attempts: int = 0) -> bool:
        if not self._transition(drop_id, DropStatus.PENDING, DropStatus.FAILED,
                                {'failure_reason': reason}):
            return False

        self._emit(AuditEventType.FAILED, drop_id, "scheduler", now,
                   severity=AuditSeverity.ERROR, success=False,
                   metadata={'failure_reason': reason.value, 'attempts': attempts})
        logger.warning(f"Dead drop {drop_id} failed: {reason.value} after {attempts} attempts")
        return True

    def record_failed_attempt(self, drop_id: str, now: datetime, attempts: int, error: str) -> None:
        self._emit(AuditEventType.DELIVERY_ATTEMPT_FAILED, drop_id, "scheduler", now,
                   severity=AuditSeverity.WARNING, success=False,
                   metadata={'attempts': attempts, 'error': error})

    def record_attempt(self, drop_id: str) -> Optional[int]:
        """Bump delivery_attempts. None means the drop is no longer pending."""
        return self.store.increment_attempts(drop_id)

    def touch(self, drop_id: str, now: datetime) -> None:
        self.store.touch(drop_id, now)

    def _transition(self, drop_id: str, expected: DropStatus, new: DropStatus,
                    fields: Dict[str, Any]) -> bool:
        if not is_transition_allowed(expected, new):
            raise ValueError(f"transition {expected.value} -> {new.value} is not allowed")
        changed = self.store.compare_and_set(drop_id, expected, new, fields)
        if not changed:
            logger.debug(f"Transition {expected.value} -> {new.value} lost for {drop_id}")
        return changed

    # =========================================================================
    # SELF-DESTRUCT
    # =========================================================================

    def purge_due(self, now: datetime) -> int:
        """Remove delivered self-destruct drops whose grace period has passed"""
        purged = 0
        for drop in self.store.list_by_status(DropStatus.DELIVERED):
            if drop.purge_after is None or drop.purge_after > now:
                continue
            if self.store.delete(drop.id):
                purged += 1
                self._emit(AuditEventType.PURGED, drop.id, "scheduler", now,
                           metadata={'delivered_at': drop.delivered_at.isoformat()
                                     if drop.delivered_at else None})
                logger.info(f"Self-destructed dead drop {drop.id}")
        return purged

    # =========================================================================
    # LEASES
    # =========================================================================

    def acquire_lease(self, drop_id: str, owner: str, now: datetime, ttl: timedelta) -> bool:
        return self.store.try_acquire_lease(drop_id, owner, now, ttl)

    def release_lease(self, drop_id: str, owner: str) -> None:
        self.store.release_lease(drop_id, owner)

    # =========================================================================
    # STATISTICS
    # =========================================================================

    def counts_by_status(self) -> Dict[str, int]:
        return self.store.counts_by_status()

    def user_stats(self, user_id: str) -> Dict[str, int]:
        """Per-user counts, cancelled included"""
        drops = self.store.list_for_user(user_id)
        stats = {
            'total': len(drops),
            'created': sum(1 for d in drops if d.creator_id == user_id),
            'receiving': sum(1 for d in drops if d.recipient_id == user_id),
        }
        for status in DropStatus:
            stats[status.value] = sum(1 for d in drops if d.status == status)
        return stats

    def _emit(self, event_type: AuditEventType, subject_id: str, actor: str, now: datetime,
              severity: AuditSeverity = AuditSeverity.INFO, success: bool = True,
              metadata: Optional[Dict[str, Any]] = None) -> None:
        # Runs after the change is committed: write failures are reported, not raised
        try:
            self.audit.record(AuditEvent(
                event_type=event_type,
                subject_id=subject_id,
                actor=actor,
                timestamp=now,
                severity=severity,
                success=success,
                metadata=metadata or {},
            ))
        except AuditWriteError as e:
            self.error_handler.handle_error(
                e,
                ErrorCategory.AUDIT,
                ErrorSeverity.HIGH_DEGRADE,
                context=subject_id,
                operation=f"audit {event_type.value}"
            )
