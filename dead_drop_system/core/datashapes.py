#!/usr/bin/env python3
"""
datashapes.py - Shared data structures for the dead drop engine

Everything that crosses a module boundary lives here:
    - DeadDrop record and its status lifecycle
    - Trigger grammar (time, heartbeat, geographic, composite)
    - Tracker samples (UserHeartbeat, UserLocation)
    - Audit events consumed by the audit sink

Keep these as plain containers. Behaviour belongs to the registry,
evaluator and dispatcher.
"""

import base64
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union


# =============================================================================
# DROP STATUS + TRANSITION GRAPH
# =============================================================================

class DropStatus(Enum):
    """Lifecycle states of a dead drop. Anything but PENDING is terminal."""
    PENDING = "pending"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not DropStatus.PENDING


# One-way, monotonic. Terminal states have no outgoing edges.
ALLOWED_TRANSITIONS: Dict[DropStatus, set] = {
    DropStatus.PENDING: {DropStatus.DELIVERED, DropStatus.CANCELLED, DropStatus.FAILED},
    DropStatus.DELIVERED: set(),
    DropStatus.CANCELLED: set(),
    DropStatus.FAILED: set(),
}


def is_transition_allowed(from_status: DropStatus, to_status: DropStatus) -> bool:
    return to_status in ALLOWED_TRANSITIONS.get(from_status, set())


class FailureReason(Enum):
    """Why a drop ended up FAILED"""
    EXPIRED = "expired"
    MAX_ATTEMPTS_EXHAUSTED = "max_attempts_exhausted"


# =============================================================================
# TRIGGER GRAMMAR
# =============================================================================

class TriggerType(Enum):
    TIME = "time"
    HEARTBEAT = "heartbeat"
    GEOGRAPHIC = "geographic"
    COMPOSITE = "composite"


class GeoCondition(Enum):
    """enters/within fire inside the fence, exits/outside fire beyond it"""
    ENTERS = "enters"
    EXITS = "exits"
    WITHIN = "within"
    OUTSIDE = "outside"


class CompositeOperator(Enum):
    AND = "AND"
    OR = "OR"


@dataclass(frozen=True)
class TimeTrigger:
    """Deliver at a fixed instant, or a number of minutes after creation."""
    deliver_at: Optional[datetime] = None
    delay_minutes: Optional[float] = None

    @property
    def type(self) -> TriggerType:
        return TriggerType.TIME


@dataclass(frozen=True)
class HeartbeatTrigger:
    """Dead man's switch on the liveness signal of monitored_id."""
    monitored_id: str
    timeout_hours: float

    @property
    def type(self) -> TriggerType:
        return TriggerType.HEARTBEAT


@dataclass(frozen=True)
class GeographicTrigger:
    """Geofence test against the latest known position of tracked_id."""
    condition: GeoCondition
    lat: float
    lon: float
    radius_meters: float
    tracked_id: str

    @property
    def type(self) -> TriggerType:
        return TriggerType.GEOGRAPHIC


@dataclass(frozen=True)
class CompositeTrigger:
    """AND/OR over child triggers. Children may nest; the tree is never cyclic."""
    operator: CompositeOperator
    children: Tuple["Trigger", ...] = ()

    @property
    def type(self) -> TriggerType:
        return TriggerType.COMPOSITE


Trigger = Union[TimeTrigger, HeartbeatTrigger, GeographicTrigger, CompositeTrigger]


# =============================================================================
# PAYLOAD + DROP RECORD
# =============================================================================

@dataclass
class PayloadEnvelope:
    """
    Already-encrypted message plus whatever metadata the encryption
    subsystem attached (algorithm, iv, auth tag, recipient key id...).

    The engine never inspects or decrypts this.
    """
    ciphertext: bytes
    metadata: Dict[str, Any] = field(default_factory=dict)

    def ciphertext_b64(self) -> str:
        return base64.b64encode(self.ciphertext).decode("ascii")


@dataclass
class DeadDrop:
    """
    A message held undelivered until its trigger fires.

    Mutated only through DeadDropRegistry (directly or on behalf of the
    scheduler/dispatcher). Status never leaves a terminal state.
    """
    # === Identity ===
    id: str
    creator_id: str
    recipient_id: str
    group_id: Optional[str] = None

    # === Content + condition ===
    payload: PayloadEnvelope = field(default_factory=lambda: PayloadEnvelope(b""))
    trigger: Optional[Trigger] = None

    # === Lifecycle ===
    status: DropStatus = DropStatus.PENDING
    created_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    failure_reason: Optional[FailureReason] = None

    # === Delivery options ===
    require_confirmation: bool = False
    self_destruct: bool = False
    max_attempts: Optional[int] = None

    # === Bookkeeping ===
    delivery_attempts: int = 0
    last_evaluated_at: Optional[datetime] = None
    purge_after: Optional[datetime] = None

    # === Coordination (multi-instance schedulers) ===
    lease_owner: Optional[str] = None
    lease_expires_at: Optional[datetime] = None


# =============================================================================
# TRACKER SAMPLES
# =============================================================================

@dataclass(frozen=True)
class UserHeartbeat:
    """Latest liveness signal. Overwritten on every ping, no history."""
    user_id: str
    last_heartbeat: datetime
    connection_tag: Optional[str] = None


@dataclass(frozen=True)
class UserLocation:
    """Latest reported position. Staleness is judged at read time only."""
    user_id: str
    lat: float
    lon: float
    accuracy: float
    timestamp: datetime


# =============================================================================
# AUDIT EVENTS
# =============================================================================

class AuditEventType(Enum):
    """Every transition the audit sink hears about."""
    CREATED = "created"
    CANCELLED = "cancelled"
    DELIVERED = "delivered"
    DELIVERY_ATTEMPT_FAILED = "delivery_attempt_failed"
    FAILED = "failed"
    EXPIRED = "expired"
    PURGED = "purged"
    LOCATION_UPDATED = "location_updated"
    EVALUATION_ERROR = "evaluation_error"


class AuditSeverity(Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


@dataclass
class AuditEvent:
    """One thing that happened to a drop (or to a tracked user)."""
    event_type: AuditEventType
    subject_id: str                          # drop id, or user id for tracker events
    actor: str                               # user id, or "scheduler"/"system"
    timestamp: datetime
    severity: AuditSeverity = AuditSeverity.INFO
    success: bool = True
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class AuditEntry:
    """
    Single entry in the audit trail.

    Hash chain: each entry carries the hash of the one before it, so editing
    any entry breaks verification from that point on.
    """
    # === Chain Identity ===
    sequence: int                            # Monotonic counter, never gaps
    timestamp: str                           # ISO format UTC
    previous_hash: str                       # Hash of previous entry (empty for first)

    # === Event Classification ===
    event_type: AuditEventType
    subject_id: str
    actor: str
    severity: AuditSeverity = AuditSeverity.INFO
    success: bool = True

    # === Payload ===
    payload: Dict[str, Any] = field(default_factory=dict)

    # === Integrity ===
    signature: str = ""                      # HMAC of the content
    entry_hash: str = ""                     # SHA-256 of content + signature


# =============================================================================
# SWEEP + DELIVERY RESULTS
# =============================================================================

class DeliveryOutcome(Enum):
    DELIVERED = "delivered"
    RETRY_SCHEDULED = "retry_scheduled"     # failed, still pending, next pass retries
    FAILED = "failed"                       # attempts exhausted
    SKIPPED = "skipped"                     # drop left PENDING before we got to it
    ERROR = "error"                         # bookkeeping fault, drop left as it was


@dataclass
class DeliveryResult:
    drop_id: str
    outcome: DeliveryOutcome
    attempts: int = 0
    error: Optional[str] = None


@dataclass
class SweepReport:
    """Summary of a single scheduler pass"""
    started_at: datetime
    evaluated: int = 0
    expired: int = 0
    fired: int = 0
    delivered: int = 0
    retrying: int = 0
    failed: int = 0
    skipped_locked: int = 0
    purged: int = 0
    errors: List[Dict[str, str]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "evaluated": self.evaluated,
            "expired": self.expired,
            "fired": self.fired,
            "delivered": self.delivered,
            "retrying": self.retrying,
            "failed": self.failed,
            "skipped_locked": self.skipped_locked,
            "purged": self.purged,
            "errors": list(self.errors),
        }
