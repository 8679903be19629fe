#!/usr/bin/env python3
"""
Dead Drop Scheduler
Periodic sweep over pending drops: expire, evaluate, dispatch, purge.

One pass, per pending drop:
    1. take the per-drop lease (skip the drop if another instance holds it)
    2. expired? -> FAILED (expired), done with this drop
    3. otherwise evaluate the trigger against tracker snapshots and `now`
    4. stamp last_evaluated_at, whatever happened
Then every drop that fired is dispatched as one concurrent batch, leases are
released, and delivered self-destruct drops past their grace are purged.

A fault on one drop is routed through ErrorHandler and audited as an
evaluation error; the rest of the sweep carries on.
"""

import logging
import threading
import time
from datetime import datetime, timedelta
from typing import List, Optional

from dead_drop_system.core.clock import Clock, utc_now
from dead_drop_system.core.datashapes import (
    AuditEvent,
    AuditEventType,
    AuditSeverity,
    DeadDrop,
    DeliveryOutcome,
    SweepReport,
)
from dead_drop_system.core.error_handler import ErrorCategory, ErrorHandler, ErrorSeverity
from dead_drop_system.dead_drop.delivery import DeliveryDispatcher
from dead_drop_system.dead_drop.registry import DeadDropRegistry
from dead_drop_system.dead_drop.trackers import HeartbeatTracker, LocationTracker
from dead_drop_system.dead_drop.trigger_evaluator import TriggerEvaluator

logger = logging.getLogger(__name__)


class DeadDropScheduler:
    """
    Background sweep driver

    run_pass() is the unit of work and can be called directly (tests, cron,
    the operator console). start()/stop() wrap it in a daemon thread that
    wakes every interval_seconds.
    """

    def __init__(self,
                 registry: DeadDropRegistry,
                 evaluator: TriggerEvaluator,
                 heartbeats: HeartbeatTracker,
                 locations: LocationTracker,
                 dispatcher: DeliveryDispatcher,
                 clock: Optional[Clock] = None,
                 error_handler: Optional[ErrorHandler] = None,
                 interval_seconds: float = 60.0,
                 instance_id: str = "scheduler-1",
                 lease_ttl: timedelta = timedelta(minutes=5)):
        self.registry = registry
        self.evaluator = evaluator
        self.heartbeats = heartbeats
        self.locations = locations
        self.dispatcher = dispatcher
        self.clock = clock or utc_now
        self.error_handler = error_handler or ErrorHandler(clock=self.clock)
        self.interval_seconds = interval_seconds
        self.instance_id = instance_id
        self.lease_ttl = lease_ttl

        # Threading control
        self.thread: Optional[threading.Thread] = None
        self.stop_event = threading.Event()
        self.running = False

        # Statistics
        self.passes_completed = 0
        self.last_report: Optional[SweepReport] = None

    # =========================================================================
    # ONE PASS
    # =========================================================================

    def run_pass(self) -> SweepReport:
        """Run a single sweep and return what happened"""
        now = self.clock()
        report = SweepReport(started_at=now)

        # One snapshot per pass so every drop sees the same tracker state
        heartbeat_snapshot = self.heartbeats.snapshot()
        location_snapshot = self.locations.snapshot()

        try:
            pending = self.registry.list_pending()
        except Exception as e:
            self._record_fault("sweep", e, ErrorCategory.REGISTRY, now, report)
            pending = []
        leased: List[str] = []
        firing: List[DeadDrop] = []

        try:
            for drop in pending:
                try:
                    acquired = self.registry.acquire_lease(drop.id, self.instance_id, now, self.lease_ttl)
                except Exception as e:
                    self._record_fault(drop.id, e, ErrorCategory.REGISTRY, now, report)
                    continue
                if not acquired:
                    report.skipped_locked += 1
                    continue
                leased.append(drop.id)
                report.evaluated += 1

                category = ErrorCategory.EXPIRY
                try:
                    # Expiry wins over a trigger that is true at the same time
                    if drop.expires_at is not None and now > drop.expires_at:
                        if self.registry.expire(drop.id, now):
                            report.expired += 1
                        continue

                    category = ErrorCategory.TRIGGER_EVALUATION
                    if self.evaluator.should_fire(drop.trigger, drop.created_at, now,
                                                  heartbeat_snapshot, location_snapshot):
                        firing.append(drop)
                except Exception as e:
                    self._record_fault(drop.id, e, category, now, report)
                finally:
                    self._touch(drop.id, now, report)

            report.fired = len(firing)
            if firing:
                self._tally(self.dispatcher.dispatch_batch(firing), report)
        finally:
            for drop_id in leased:
                try:
                    self.registry.release_lease(drop_id, self.instance_id)
                except Exception as e:
                    self._record_fault(drop_id, e, ErrorCategory.REGISTRY, now, report)

        try:
            report.purged = self.registry.purge_due(now)
        except Exception as e:
            self._record_fault("purge", e, ErrorCategory.REGISTRY, now, report)

        self.passes_completed += 1
        self.last_report = report

        logger.info(
            f"Sweep: {report.evaluated} evaluated, {report.expired} expired, {report.fired} fired, "
            f"{report.delivered} delivered, {report.retrying} retrying, {report.failed} failed, "
            f"{report.purged} purged, {len(report.errors)} errors"
        )
        return report

    def _tally(self, results, report: SweepReport) -> None:
        for result in results:
            if result.outcome == DeliveryOutcome.DELIVERED:
                report.delivered += 1
            elif result.outcome == DeliveryOutcome.RETRY_SCHEDULED:
                report.retrying += 1
            elif result.outcome == DeliveryOutcome.FAILED:
                report.failed += 1
            elif result.outcome == DeliveryOutcome.ERROR:
                report.errors.append({'drop_id': result.drop_id, 'error': result.error or ''})

    def _touch(self, drop_id: str, now: datetime, report: SweepReport) -> None:
        try:
            self.registry.touch(drop_id, now)
        except Exception as e:
            self._record_fault(drop_id, e, ErrorCategory.REGISTRY, now, report)

    def _record_fault(self, drop_id: str, error: Exception, category: ErrorCategory,
                      now: datetime, report: SweepReport) -> None:
        self.error_handler.handle_error(
            error,
            category,
            ErrorSeverity.HIGH_DEGRADE,
            context=drop_id,
            operation="sweep"
        )
        report.errors.append({'drop_id': drop_id, 'error': f"{type(error).__name__}: {error}"})

        try:
            self.registry.audit.record(AuditEvent(
                event_type=AuditEventType.EVALUATION_ERROR,
                subject_id=drop_id,
                actor="scheduler",
                timestamp=now,
                severity=AuditSeverity.ERROR,
                success=False,
                metadata={'category': category.value, 'error': str(error)},
            ))
        except Exception as audit_error:
            self.error_handler.handle_error(
                audit_error,
                ErrorCategory.AUDIT,
                ErrorSeverity.HIGH_DEGRADE,
                context=drop_id,
                operation="audit evaluation error"
            )

    # =========================================================================
    # BACKGROUND THREAD
    # =========================================================================

    def start(self) -> bool:
        """
        Start the background sweep thread

        Returns:
            True if started, False if already running
        """
        if self.is_running():
            logger.warning("Dead drop scheduler already running")
            return False

        self.thread = threading.Thread(
            target=self._loop,
            name="DeadDropScheduler",
            daemon=True
        )
        self.stop_event.clear()
        self.running = True
        self.thread.start()

        logger.info(f"Dead drop scheduler started ({self.instance_id}, every {self.interval_seconds}s)")
        return True

    def stop(self, timeout: float = 10.0) -> bool:
        """
        Stop the sweep thread. A pass already in progress finishes first.

        Returns:
            True if stopped cleanly, False on timeout
        """
        if not self.is_running():
            return True

        self.running = False
        self.stop_event.set()

        if self.thread:
            self.thread.join(timeout=timeout)
            if self.thread.is_alive():
                logger.error(f"Dead drop scheduler failed to stop within {timeout}s")
                return False

        logger.info("Dead drop scheduler stopped")
        return True

    def is_running(self) -> bool:
        return bool(self.running and self.thread and self.thread.is_alive())

    def _loop(self) -> None:
        while not self.stop_event.is_set():
            started = time.monotonic()
            try:
                self.run_pass()
            except Exception as e:
                self.error_handler.handle_error(
                    e,
                    ErrorCategory.SCHEDULER,
                    ErrorSeverity.HIGH_DEGRADE,
                    operation="sweep"
                )

            elapsed = time.monotonic() - started
            self.stop_event.wait(max(0.0, self.interval_seconds - elapsed))
