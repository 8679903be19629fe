#!/usr/bin/env python3
"""
DeadDropEngine - one object that owns a complete dead drop deployment

Wires store -> registry -> trackers -> evaluator -> dispatcher -> scheduler
and the audit trail underneath all of them. The HTTP service, the operator
console and embedders talk to this, never to the parts directly.

Usage:
    engine = DeadDropEngine.from_config(get_config("production"))
    engine.start()
    drop = engine.create("alice", "bob", PayloadEnvelope(ciphertext, meta),
                         {"type": "heartbeat", "monitored_id": "alice", "timeout_hours": 48})
    engine.record_heartbeat("alice")
"""

import logging
from typing import Any, Dict, List, Optional

from dead_drop_system.core.audit_trail import AuditTrail
from dead_drop_system.core.clock import Clock, utc_now
from dead_drop_system.core.datashapes import (
    AuditEvent,
    AuditEventType,
    DeadDrop,
    DropStatus,
    PayloadEnvelope,
    SweepReport,
    UserHeartbeat,
    UserLocation,
)
from dead_drop_system.core.error_handler import (
    AuditWriteError,
    AuthorizationError,
    ErrorCategory,
    ErrorHandler,
    ErrorSeverity,
    InvalidStateError,
)
from dead_drop_system.dead_drop.config import DeadDropConfig
from dead_drop_system.dead_drop.database import SQLiteDeadDropStore
from dead_drop_system.dead_drop.delivery import (
    ConfirmationHandler,
    DeliveryChannel,
    DeliveryDispatcher,
    HttpDeliveryChannel,
)
from dead_drop_system.dead_drop.registry import DeadDropRegistry, DeadDropStore, InMemoryDeadDropStore
from dead_drop_system.dead_drop.scheduler import DeadDropScheduler
from dead_drop_system.dead_drop.trackers import HeartbeatTracker, LocationTracker
from dead_drop_system.dead_drop.trigger_evaluator import TriggerEvaluator

logger = logging.getLogger(__name__)


class DeadDropEngine:
    """Facade over the registry, trackers, scheduler and audit trail"""

    def __init__(self,
                 store: DeadDropStore,
                 channel: DeliveryChannel,
                 audit: Optional[AuditTrail] = None,
                 clock: Optional[Clock] = None,
                 config=DeadDropConfig,
                 confirmation_handler: Optional[ConfirmationHandler] = None):
        self.config = config
        self.clock = clock or utc_now
        self.audit = audit if audit is not None else AuditTrail(signing_key=config.AUDIT_SIGNING_KEY)
        self.error_handler = ErrorHandler(clock=self.clock)

        self.registry = DeadDropRegistry(
            store,
            self.audit,
            clock=self.clock,
            default_expiry=config.default_expiry(),
            max_trigger_depth=config.MAX_TRIGGER_DEPTH,
            self_destruct_grace=config.self_destruct_grace(),
            error_handler=self.error_handler,
        )
        self.heartbeats = HeartbeatTracker(clock=self.clock)
        self.locations = LocationTracker(clock=self.clock)
        self.evaluator = TriggerEvaluator(
            location_max_age=config.location_max_age(),
            max_depth=config.MAX_TRIGGER_DEPTH,
        )
        self.dispatcher = DeliveryDispatcher(
            self.registry,
            channel,
            clock=self.clock,
            timeout_seconds=config.DELIVERY_TIMEOUT_SECONDS,
            max_workers=config.DELIVERY_WORKERS,
            confirmation_handler=confirmation_handler,
            error_handler=self.error_handler,
        )
        self.scheduler = DeadDropScheduler(
            self.registry,
            self.evaluator,
            self.heartbeats,
            self.locations,
            self.dispatcher,
            clock=self.clock,
            error_handler=self.error_handler,
            interval_seconds=config.EVALUATION_INTERVAL_SECONDS,
            instance_id=config.INSTANCE_ID,
            lease_ttl=config.lease_ttl(),
        )

    @classmethod
    def from_config(cls, config=DeadDropConfig, channel: Optional[DeliveryChannel] = None,
                    clock: Optional[Clock] = None) -> "DeadDropEngine":
        """Build the default stack described by a config class"""
        if config.STORE_BACKEND == 'sqlite':
            store = SQLiteDeadDropStore(config.DB_PATH, max_trigger_depth=config.MAX_TRIGGER_DEPTH)
        else:
            store = InMemoryDeadDropStore()

        audit = AuditTrail(storage_path=config.AUDIT_LOG_PATH, signing_key=config.AUDIT_SIGNING_KEY)

        if channel is None:
            channel = HttpDeliveryChannel(config.DELIVERY_URL, timeout=config.DELIVERY_TIMEOUT_SECONDS)

        logger.info(f"Dead drop engine built with {config.STORE_BACKEND} store")
        return cls(store, channel, audit=audit, clock=clock, config=config)

    # =========================================================================
    # DROPS
    # =========================================================================

    def create(self, creator_id: str, recipient_id: str, payload: PayloadEnvelope,
               trigger: Any, **options) -> DeadDrop:
        """See DeadDropRegistry.create for the options"""
        return self.registry.create(creator_id, recipient_id, payload, trigger, **options)

    def get(self, drop_id: str) -> Optional[DeadDrop]:
        return self.registry.get(drop_id)

    def get_for_user(self, drop_id: str, user_id: str) -> DeadDrop:
        """Creator or recipient only"""
        drop = self.registry.get_or_raise(drop_id)
        if user_id not in (drop.creator_id, drop.recipient_id):
            raise AuthorizationError(f"{user_id} may not view dead drop {drop_id}")
        return drop

    def cancel(self, drop_id: str, requester_id: str, strict: bool = False) -> bool:
        """
        Cancel a pending drop.

        Args:
            strict: Raise instead of returning False

        Raises (strict only):
            NotFoundError, AuthorizationError, InvalidStateError
        """
        if not strict:
            return self.registry.cancel(drop_id, requester_id)

        drop = self.registry.get_or_raise(drop_id)
        if drop.creator_id != requester_id:
            raise AuthorizationError(f"only the creator can cancel dead drop {drop_id}")
        if drop.status != DropStatus.PENDING:
            raise InvalidStateError(f"dead drop {drop_id} is already {drop.status.value}")
        if not self.registry.cancel(drop_id, requester_id):
            # Lost the race with the scheduler
            current = self.registry.get(drop_id)
            state = current.status.value if current else "gone"
            raise InvalidStateError(f"dead drop {drop_id} is already {state}")
        return True

    def list_for_user(self, user_id: str, include_cancelled: bool = False,
                      status: Optional[DropStatus] = None) -> List[DeadDrop]:
        return self.registry.list_for_user(user_id, include_cancelled=include_cancelled, status=status)

    # =========================================================================
    # TRACKERS
    # =========================================================================

    def record_heartbeat(self, user_id: str, connection_tag: Optional[str] = None) -> UserHeartbeat:
        return self.heartbeats.record(user_id, connection_tag)

    def get_heartbeat(self, user_id: str) -> Optional[UserHeartbeat]:
        return self.heartbeats.get(user_id)

    def record_location(self, user_id: str, lat: float, lon: float, accuracy: float = 0.0) -> UserLocation:
        location = self.locations.record(user_id, lat, lon, accuracy)
        try:
            self.audit.record(AuditEvent(
                event_type=AuditEventType.LOCATION_UPDATED,
                subject_id=user_id,
                actor=user_id,
                timestamp=location.timestamp,
                metadata={'lat': location.lat, 'lon': location.lon, 'accuracy': location.accuracy},
            ))
        except AuditWriteError as e:
            self.error_handler.handle_error(e, ErrorCategory.AUDIT, ErrorSeverity.HIGH_DEGRADE,
                                            context=user_id, operation="audit location_updated")
        return location

    def get_location(self, user_id: str) -> Optional[UserLocation]:
        return self.locations.get(user_id)

    # =========================================================================
    # STATISTICS
    # =========================================================================

    def stats(self) -> Dict[str, int]:
        counts = self.registry.counts_by_status()
        return {
            'total_drops': sum(counts.values()),
            'pending_drops': counts.get(DropStatus.PENDING.value, 0),
            'delivered_drops': counts.get(DropStatus.DELIVERED.value, 0),
            'cancelled_drops': counts.get(DropStatus.CANCELLED.value, 0),
            'failed_drops': counts.get(DropStatus.FAILED.value, 0),
            'active_heartbeats': self.heartbeats.count(),
            'tracked_locations': self.locations.count(),
        }

    def user_stats(self, user_id: str) -> Dict[str, int]:
        return self.registry.user_stats(user_id)

    def error_summary(self) -> Dict[str, Any]:
        return self.error_handler.get_error_summary()

    def verify_audit_trail(self) -> Dict[str, Any]:
        valid, first_bad = self.audit.verify_chain()
        return {
            'valid': valid,
            'first_bad_sequence': first_bad,
            'total_entries': len(self.audit),
            'root_hash': self.audit.get_root_hash(),
        }

    # =========================================================================
    # SCHEDULING
    # =========================================================================

    def run_pass(self) -> SweepReport:
        return self.scheduler.run_pass()

    def start(self) -> bool:
        return self.scheduler.start()

    def stop(self, timeout: float = 10.0) -> bool:
        return self.scheduler.stop(timeout)

    def shutdown(self) -> None:
        self.stop()
        self.dispatcher.shutdown()
