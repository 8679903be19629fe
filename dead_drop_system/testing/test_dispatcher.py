"""
Delivery Dispatcher Tests

Attempt bookkeeping, retry and exhaustion, push timeouts, the race with a
concurrent cancel, confirmation hand-off and the HTTP channel.
"""

import base64
import time
from datetime import timedelta
from unittest.mock import Mock, patch

import pytest
import requests

from dead_drop_system.core.datashapes import (
    AuditEventType,
    DeliveryOutcome,
    DropStatus,
    FailureReason,
)
from dead_drop_system.core.error_handler import ErrorHandler, TransientDeliveryError
from dead_drop_system.dead_drop.delivery import (
    CallbackDeliveryChannel,
    HttpDeliveryChannel,
    build_delivery_message,
)

from conftest import RecordingChannel, T0

DELAY_ZERO = {"type": "time", "delay_minutes": 0}


@pytest.fixture
def drop(registry, envelope):
    return registry.create("alice", "bob", envelope, DELAY_ZERO, group_id="room-1")


# =============================================================================
# SUCCESS
# =============================================================================

class TestSuccessfulDelivery:

    def test_delivers(self, registry, drop, recording_channel, make_dispatcher, audit):
        """
        HAPPY PATH: One push, drop delivered with attempts=1 and an audit record.
        """
        dispatcher = make_dispatcher(recording_channel)

        result = dispatcher.attempt_delivery(drop)

        assert result.outcome is DeliveryOutcome.DELIVERED
        assert result.attempts == 1
        stored = registry.get(drop.id)
        assert stored.status is DropStatus.DELIVERED
        assert stored.delivered_at == T0
        assert stored.delivery_attempts == 1
        assert len(recording_channel.pushes) == 1
        assert audit.get_by_drop(drop.id)[-1].event_type is AuditEventType.DELIVERED

    def test_message_shape(self, drop, recording_channel, make_dispatcher, envelope):
        """
        HAPPY PATH: Recipient gets the untouched ciphertext plus routing fields.
        """
        make_dispatcher(recording_channel).attempt_delivery(drop)

        recipient, message = recording_channel.pushes[0]
        assert recipient == "bob"
        assert message["id"] == drop.id
        assert message["sender_id"] == "alice"
        assert message["group_id"] == "room-1"
        assert message["dead_drop"] is True
        assert base64.b64decode(message["encrypted_content"]) == envelope.ciphertext
        assert message["encryption_metadata"] == envelope.metadata
        assert message["trigger_summary"] == "Deliver in 0h 0m"

    def test_nonce_differs_per_message(self, drop, clock):
        first = build_delivery_message(drop, clock())
        second = build_delivery_message(drop, clock())
        assert first["nonce"] != second["nonce"]

    def test_batch_preserves_order(self, registry, envelope, recording_channel, make_dispatcher):
        drops = [registry.create("alice", f"user-{i}", envelope, DELAY_ZERO) for i in range(5)]
        results = make_dispatcher(recording_channel).dispatch_batch(drops)
        assert [r.drop_id for r in results] == [d.id for d in drops]
        assert all(r.outcome is DeliveryOutcome.DELIVERED for r in results)

    def test_self_destruct_schedules_purge(self, registry, envelope, recording_channel, make_dispatcher):
        drop = registry.create("alice", "bob", envelope, DELAY_ZERO, self_destruct=True)
        make_dispatcher(recording_channel).attempt_delivery(drop)
        assert registry.get(drop.id).purge_after == T0 + timedelta(seconds=60)

    def test_confirmation_requested(self, registry, envelope, recording_channel, make_dispatcher):
        """
        HAPPY PATH: require_confirmation hands the drop to the confirmation handler.
        """
        handler = Mock()
        drop = registry.create("alice", "bob", envelope, DELAY_ZERO, require_confirmation=True)

        make_dispatcher(recording_channel, confirmation_handler=handler).attempt_delivery(drop)

        handler.request_confirmation.assert_called_once()
        assert handler.request_confirmation.call_args[0][0].id == drop.id

    def test_confirmation_failure_keeps_delivery(self, registry, envelope, recording_channel, make_dispatcher):
        """
        EDGE: A broken confirmation handler does not undo a delivery.
        """
        handler = Mock()
        handler.request_confirmation.side_effect = RuntimeError("receipt service down")
        drop = registry.create("alice", "bob", envelope, DELAY_ZERO, require_confirmation=True)

        result = make_dispatcher(recording_channel, confirmation_handler=handler).attempt_delivery(drop)

        assert result.outcome is DeliveryOutcome.DELIVERED
        assert registry.get(drop.id).status is DropStatus.DELIVERED

    def test_no_confirmation_when_not_required(self, drop, recording_channel, make_dispatcher):
        handler = Mock()
        make_dispatcher(recording_channel, confirmation_handler=handler).attempt_delivery(drop)
        handler.request_confirmation.assert_not_called()


# =============================================================================
# FAILURE + RETRY
# =============================================================================

class TestFailedDelivery:

    def test_rejected_push_stays_pending(self, registry, drop, failing_channel, make_dispatcher, audit):
        """
        HAPPY PATH: A refused push leaves the drop pending for the next pass.
        """
        result = make_dispatcher(failing_channel).attempt_delivery(drop)

        assert result.outcome is DeliveryOutcome.RETRY_SCHEDULED
        assert result.error == "channel rejected push"
        stored = registry.get(drop.id)
        assert stored.status is DropStatus.PENDING
        assert stored.delivery_attempts == 1
        assert audit.get_by_drop(drop.id)[-1].event_type is AuditEventType.DELIVERY_ATTEMPT_FAILED

    def test_channel_exception_is_a_failed_attempt(self, registry, drop, make_dispatcher):
        channel = RecordingChannel(result=TransientDeliveryError("gateway 503"))
        result = make_dispatcher(channel).attempt_delivery(drop)

        assert result.outcome is DeliveryOutcome.RETRY_SCHEDULED
        assert "gateway 503" in result.error
        assert registry.get(drop.id).status is DropStatus.PENDING

    def test_max_attempts_exhausted(self, registry, envelope, failing_channel, make_dispatcher):
        """
        CRITICAL: After max_attempts failures the drop is FAILED and never pushed again.
        """
        drop = registry.create("alice", "bob", envelope, DELAY_ZERO, max_attempts=3)
        dispatcher = make_dispatcher(failing_channel)

        outcomes = [dispatcher.attempt_delivery(registry.get(drop.id)).outcome for _ in range(3)]
        assert outcomes == [DeliveryOutcome.RETRY_SCHEDULED, DeliveryOutcome.RETRY_SCHEDULED,
                            DeliveryOutcome.FAILED]

        stored = registry.get(drop.id)
        assert stored.status is DropStatus.FAILED
        assert stored.failure_reason is FailureReason.MAX_ATTEMPTS_EXHAUSTED
        assert stored.delivery_attempts == 3

        assert dispatcher.attempt_delivery(stored).outcome is DeliveryOutcome.SKIPPED
        assert len(failing_channel.pushes) == 3

    def test_unbounded_attempts(self, registry, drop, failing_channel, make_dispatcher):
        """
        EDGE: Without max_attempts the drop keeps retrying.
        """
        dispatcher = make_dispatcher(failing_channel)
        for _ in range(10):
            assert dispatcher.attempt_delivery(drop).outcome is DeliveryOutcome.RETRY_SCHEDULED
        assert registry.get(drop.id).delivery_attempts == 10

    def test_push_timeout(self, registry, drop, blocking_channel, make_dispatcher):
        """
        CRITICAL: A hung channel counts as a failed attempt at the deadline.
        """
        result = make_dispatcher(blocking_channel, timeout_seconds=0.2).attempt_delivery(drop)

        assert result.outcome is DeliveryOutcome.RETRY_SCHEDULED
        assert "timed out" in result.error
        assert registry.get(drop.id).status is DropStatus.PENDING


# =============================================================================
# RACES + FAULTS
# =============================================================================

class TestRaces:

    def test_not_pending_is_skipped(self, registry, drop, recording_channel, make_dispatcher):
        """
        EDGE: A drop cancelled before dispatch is never pushed.
        """
        registry.cancel(drop.id, "alice")
        result = make_dispatcher(recording_channel).attempt_delivery(drop)

        assert result.outcome is DeliveryOutcome.SKIPPED
        assert recording_channel.pushes == []

    def test_cancel_during_push(self, registry, drop, make_dispatcher):
        """
        CRITICAL: Cancel lands while the push is in flight; cancel wins, no double transition.
        """
        def push(recipient_id, message):
            assert registry.cancel(message["id"], "alice")
            return True

        result = make_dispatcher(CallbackDeliveryChannel(push)).attempt_delivery(drop)

        assert result.outcome is DeliveryOutcome.SKIPPED
        stored = registry.get(drop.id)
        assert stored.status is DropStatus.CANCELLED
        assert stored.delivered_at is None

    def test_bookkeeping_fault_is_isolated(self, registry, envelope, recording_channel, make_dispatcher):
        """
        CRITICAL: A registry failure on one drop is reported and the batch carries on.
        """
        errors = ErrorHandler()
        bad = registry.create("alice", "bob", envelope, DELAY_ZERO)
        good = registry.create("alice", "carol", envelope, DELAY_ZERO)
        dispatcher = make_dispatcher(recording_channel, error_handler=errors)
        real_mark_delivered = registry.mark_delivered

        def flaky(drop_id, now, attempts=0):
            if drop_id == bad.id:
                raise RuntimeError("database is locked")
            return real_mark_delivered(drop_id, now, attempts)

        with patch.object(registry, "mark_delivered", side_effect=flaky):
            results = dispatcher.dispatch_batch([bad, good])

        assert [r.outcome for r in results] == [DeliveryOutcome.ERROR, DeliveryOutcome.DELIVERED]
        assert registry.get(bad.id).status is DropStatus.PENDING
        assert errors.get_error_summary()["by_category"] == {"delivery": 1}


# =============================================================================
# HTTP CHANNEL
# =============================================================================

class TestHttpDeliveryChannel:

    def test_posts_to_gateway(self):
        session = Mock()
        session.post.return_value = Mock(status_code=202)
        channel = HttpDeliveryChannel("http://push.local/", timeout=3, session=session)

        assert channel.push("bob", {"id": "dd_1"}) is True
        session.post.assert_called_once_with("http://push.local/push/bob", json={"id": "dd_1"}, timeout=3)

    def test_non_2xx_is_not_delivered(self):
        session = Mock()
        session.post.return_value = Mock(status_code=404)
        assert HttpDeliveryChannel("http://push.local", session=session).push("bob", {"id": "dd_1"}) is False

    def test_unreachable_raises_transient(self):
        """
        EDGE: Network errors surface as TransientDeliveryError.
        """
        session = Mock()
        session.post.side_effect = requests.exceptions.ConnectionError("connection refused")
        with pytest.raises(TransientDeliveryError):
            HttpDeliveryChannel("http://push.local", session=session).push("bob", {"id": "dd_1"})


# =============================================================================
# WORKER POOL
# =============================================================================

class TestWorkerPool:

    def test_queued_pushes_get_their_own_deadline(self, registry, envelope, make_dispatcher):
        """
        CRITICAL: More fired drops than workers; each push is timed from when it starts.
        """
        def slow_push(recipient_id, message):
            time.sleep(0.3)
            return True

        drops = [registry.create("alice", f"user-{i}", envelope, DELAY_ZERO, max_attempts=1)
                 for i in range(6)]
        dispatcher = make_dispatcher(CallbackDeliveryChannel(slow_push), timeout_seconds=0.5, max_workers=2)

        results = dispatcher.dispatch_batch(drops)

        assert [r.outcome for r in results] == [DeliveryOutcome.DELIVERED] * 6
        for drop in drops:
            stored = registry.get(drop.id)
            assert stored.status is DropStatus.DELIVERED
            assert stored.delivery_attempts == 1

    def test_push_that_never_started_keeps_its_attempt(self, registry, envelope, blocking_channel,
                                                         make_dispatcher):
        """
        CRITICAL: A drop stuck behind a hung worker is handed back without losing an attempt.
        """
        hung = registry.create("alice", "bob", envelope, DELAY_ZERO, max_attempts=1)
        waiting = registry.create("alice", "carol", envelope, DELAY_ZERO, max_attempts=1)
        dispatcher = make_dispatcher(blocking_channel, timeout_seconds=0.2, max_workers=1)

        results = dispatcher.dispatch_batch([hung, waiting])

        assert results[0].outcome is DeliveryOutcome.FAILED
        assert results[1].outcome is DeliveryOutcome.SKIPPED
        stored = registry.get(waiting.id)
        assert stored.status is DropStatus.PENDING
        assert stored.delivery_attempts == 0
        assert blocking_channel.calls == 1
