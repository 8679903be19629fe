#!/usr/bin/env python3
"""
Delivery - pushing fired dead drops to their recipients

Channels are external: HttpDeliveryChannel talks to a push gateway over HTTP,
CallbackDeliveryChannel wraps any callable. The dispatcher owns the
attempt/retry/fail bookkeeping around them.

Retry model: there is no retry queue. A failed push leaves the drop PENDING
and the next scheduler pass re-evaluates the (monotone) trigger and tries
again, until max_attempts is reached.
"""

import logging
import math
import time
import uuid
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Protocol

import requests

from dead_drop_system.core.clock import Clock, utc_now
from dead_drop_system.core.datashapes import (
    DeadDrop,
    DeliveryOutcome,
    DeliveryResult,
    FailureReason,
)
from dead_drop_system.core.error_handler import (
    ErrorCategory,
    ErrorHandler,
    ErrorSeverity,
    TransientDeliveryError,
)
from dead_drop_system.dead_drop.registry import DeadDropRegistry
from dead_drop_system.dead_drop.trigger_evaluator import describe_trigger

logger = logging.getLogger(__name__)


# =============================================================================
# CHANNELS
# =============================================================================

class DeliveryChannel(Protocol):
    """Real-time transport. True = accepted by the transport, False = not delivered."""

    def push(self, recipient_id: str, message: Dict[str, Any]) -> bool:
        ...


class ConfirmationHandler(Protocol):
    """
    External read-receipt flow for drops created with require_confirmation.
    Called once, after the drop is marked delivered.
    """

    def request_confirmation(self, drop: DeadDrop) -> None:
        ...


class HttpDeliveryChannel:
    """POSTs the delivery message to {base_url}/push/{recipient_id}"""

    def __init__(self, base_url: str, timeout: float = 10.0, session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.session = session or requests.Session()

    def push(self, recipient_id: str, message: Dict[str, Any]) -> bool:
        try:
            response = self.session.post(
                f"{self.base_url}/push/{recipient_id}",
                json=message,
                timeout=self.timeout
            )
        except requests.exceptions.RequestException as e:
            raise TransientDeliveryError(f"push gateway unreachable: {e}") from e

        if 200 <= response.status_code < 300:
            return True

        logger.warning(f"Push gateway refused {message.get('id')}: HTTP {response.status_code}")
        return False


class CallbackDeliveryChannel:
    """Adapts a plain callable(recipient_id, message) -> bool"""

    def __init__(self, callback: Callable[[str, Dict[str, Any]], bool]):
        self.callback = callback

    def push(self, recipient_id: str, message: Dict[str, Any]) -> bool:
        return bool(self.callback(recipient_id, message))


def build_delivery_message(drop: DeadDrop, now: datetime) -> Dict[str, Any]:
    """What the recipient receives. The ciphertext goes out untouched."""
    return {
        'id': drop.id,
        'sender_id': drop.creator_id,
        'recipient_id': drop.recipient_id,
        'group_id': drop.group_id,
        'encrypted_content': drop.payload.ciphertext_b64(),
        'encryption_metadata': dict(drop.payload.metadata),
        'dead_drop': True,
        'trigger_summary': describe_trigger(drop.trigger),
        'require_confirmation': drop.require_confirmation,
        'timestamp': now.isoformat(),
        'nonce': str(uuid.uuid4()),
    }


# =============================================================================
# DISPATCHER
# =============================================================================

class _PushTask:
    """State one push shares between its worker and the batch loop"""

    def __init__(self, drop: DeadDrop):
        self.drop = drop
        self.started_at: Optional[float] = None   # monotonic, set when a worker picks it up
        self.attempts: Optional[int] = None
        self.abandoned = False


class DeliveryDispatcher:
    """
    Attempts delivery of fired drops and records the outcome through the registry.

    Pushes run on a thread pool. Each push gets its own deadline, starting when
    a worker picks it up, so one hung channel call cannot stall the sweep and a
    drop waiting for a free worker is not charged for the wait. Calls still
    running at their deadline are abandoned and counted as failed attempts;
    their late results are ignored. Pushes that never get a worker within the
    batch window are handed back untouched for the next pass.
    """

    START_POLL_SECONDS = 0.05

    def __init__(self,
                 registry: DeadDropRegistry,
                 channel: DeliveryChannel,
                 clock: Optional[Clock] = None,
                 timeout_seconds: float = 10.0,
                 max_workers: int = 8,
                 confirmation_handler: Optional[ConfirmationHandler] = None,
                 error_handler: Optional[ErrorHandler] = None):
        self.registry = registry
        self.channel = channel
        self.clock = clock or utc_now
        self.timeout_seconds = timeout_seconds
        self.max_workers = max_workers
        self.confirmation_handler = confirmation_handler
        self.error_handler = error_handler or ErrorHandler(clock=self.clock)
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="dead-drop-push")

    def attempt_delivery(self, drop: DeadDrop) -> DeliveryResult:
        return self.dispatch_batch([drop])[0]

    def dispatch_batch(self, drops: List[DeadDrop]) -> List[DeliveryResult]:
        """
        Push every drop concurrently and settle each one.

        Returns:
            One DeliveryResult per input drop, in input order
        """
        results: Dict[str, DeliveryResult] = {}
        tasks: Dict[Future, _PushTask] = {}

        for drop in drops:
            task = _PushTask(drop)
            try:
                tasks[self._executor.submit(self._push, task)] = task
            except Exception as e:
                results[drop.id] = self._fault(drop, 0, e, "start delivery")

        # Enough room for every wave of workers to run to its deadline
        waves = math.ceil(len(tasks) / self.max_workers) if tasks else 0
        start_deadline = time.monotonic() + self.timeout_seconds * (waves + 1)
        pending = set(tasks)

        while pending:
            done, pending = wait(pending, timeout=self._next_wake(pending, tasks),
                                 return_when=FIRST_COMPLETED)
            for future in done:
                results[tasks[future].drop.id] = self._collect(future, tasks[future])

            now = time.monotonic()
            for future in list(pending):
                task = tasks[future]
                if task.started_at is not None:
                    if now - task.started_at >= self.timeout_seconds:
                        pending.discard(future)
                        results[task.drop.id] = self._abandon(task)
                elif now >= start_deadline and future.cancel():
                    pending.discard(future)
                    logger.warning(f"Push for {task.drop.id} never started; left for the next pass")
                    results[task.drop.id] = DeliveryResult(
                        task.drop.id, DeliveryOutcome.SKIPPED, 0, "no delivery worker became free"
                    )

        return [results[drop.id] for drop in drops]

    def _push(self, task: _PushTask) -> Optional[bool]:
        """Worker side: count the attempt, then push. None = drop no longer pending."""
        task.started_at = time.monotonic()
        attempts = self.registry.record_attempt(task.drop.id)
        if attempts is None:
            return None
        task.attempts = attempts
        if task.abandoned:
            return None
        message = build_delivery_message(task.drop, self.clock())
        return self.channel.push(task.drop.recipient_id, message)

    def _next_wake(self, pending, tasks: Dict[Future, _PushTask]) -> float:
        now = time.monotonic()
        wake = None
        for future in pending:
            started_at = tasks[future].started_at
            if started_at is None:
                candidate = now + self.START_POLL_SECONDS
            else:
                candidate = started_at + self.timeout_seconds
            wake = candidate if wake is None else min(wake, candidate)
        return max(0.0, wake - now)

    def _collect(self, future: Future, task: _PushTask) -> DeliveryResult:
        drop = task.drop
        error = future.exception()
        if error is not None:
            if task.attempts is None:
                return self._fault(drop, 0, error, "start delivery")
            return self._settle(drop, task.attempts, False, f"{type(error).__name__}: {error}")

        pushed = future.result()
        if pushed is None:
            # Someone else moved the drop out of PENDING first
            return DeliveryResult(drop.id, DeliveryOutcome.SKIPPED, task.attempts or 0)
        if pushed:
            return self._settle(drop, task.attempts, True)
        return self._settle(drop, task.attempts, False, "channel rejected push")

    def _abandon(self, task: _PushTask) -> DeliveryResult:
        task.abandoned = True
        error = f"push timed out after {self.timeout_seconds}s"
        if task.attempts is None:
            logger.warning(f"Dead drop {task.drop.id} timed out before its attempt was counted")
            return DeliveryResult(task.drop.id, DeliveryOutcome.SKIPPED, 0, error)
        return self._settle(task.drop, task.attempts, False, error)

    def _settle(self, drop: DeadDrop, attempts: int, pushed: bool, error: Optional[str] = None) -> DeliveryResult:
        try:
            if pushed:
                return self._settle_success(drop, attempts)
            return self._settle_failure(drop, attempts, error or "delivery failed")
        except Exception as e:
            return self._fault(drop, attempts, e, "record delivery outcome")

    def _fault(self, drop: DeadDrop, attempts: int, error: Exception, operation: str) -> DeliveryResult:
        self.error_handler.handle_error(
            error,
            ErrorCategory.DELIVERY,
            ErrorSeverity.HIGH_DEGRADE,
            context=drop.id,
            operation=operation
        )
        return DeliveryResult(drop.id, DeliveryOutcome.ERROR, attempts, str(error))

    def _settle_success(self, drop: DeadDrop, attempts: int) -> DeliveryResult:
        now = self.clock()
        if not self.registry.mark_delivered(drop.id, now, attempts):
            # Cancelled or expired while the push was in flight
            logger.warning(f"Dead drop {drop.id} pushed but no longer pending; status left unchanged")
            return DeliveryResult(drop.id, DeliveryOutcome.SKIPPED, attempts)

        if drop.require_confirmation and self.confirmation_handler is not None:
            try:
                self.confirmation_handler.request_confirmation(drop)
            except Exception as e:
                logger.error(f"Confirmation request for {drop.id} failed: {e}")

        return DeliveryResult(drop.id, DeliveryOutcome.DELIVERED, attempts)

    def _settle_failure(self, drop: DeadDrop, attempts: int, error: str) -> DeliveryResult:
        now = self.clock()
        logger.warning(f"Delivery attempt {attempts} for {drop.id} failed: {error}")
        self.registry.record_failed_attempt(drop.id, now, attempts, error)

        if drop.max_attempts is not None and attempts >= drop.max_attempts:
            if self.registry.mark_failed(drop.id, FailureReason.MAX_ATTEMPTS_EXHAUSTED, now, attempts):
                return DeliveryResult(drop.id, DeliveryOutcome.FAILED, attempts, error)
            return DeliveryResult(drop.id, DeliveryOutcome.SKIPPED, attempts, error)

        return DeliveryResult(drop.id, DeliveryOutcome.RETRY_SCHEDULED, attempts, error)

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False)
