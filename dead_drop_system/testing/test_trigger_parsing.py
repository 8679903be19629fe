"""
Trigger Grammar Tests

Parsing the JSON wire form, validation failures, serialization and the
human-readable summaries shown in listings.
"""

from datetime import datetime, timedelta, timezone

import pytest

from dead_drop_system.core.datashapes import (
    CompositeOperator,
    CompositeTrigger,
    GeoCondition,
    GeographicTrigger,
    HeartbeatTrigger,
    TimeTrigger,
)
from dead_drop_system.core.error_handler import TriggerDepthError, ValidationError
from dead_drop_system.dead_drop.trigger_evaluator import (
    coerce_trigger,
    describe_trigger,
    trigger_depth,
    trigger_from_dict,
    trigger_to_dict,
    validate_trigger,
)


def nested(depth):
    """Composite chain with `depth` levels in total (leaf included)"""
    data = {"type": "time", "delay_minutes": 1}
    for _ in range(depth - 1):
        data = {"type": "composite", "operator": "AND", "children": [data]}
    return data


# =============================================================================
# PARSING
# =============================================================================

class TestParseValid:

    def test_time_delay(self):
        """
        HAPPY PATH: Delay-based time trigger.
        """
        trigger = trigger_from_dict({"type": "time", "delay_minutes": 90})
        assert trigger == TimeTrigger(delay_minutes=90)

    def test_time_deliver_at_with_z_suffix(self):
        """
        HAPPY PATH: ISO timestamps with a trailing Z parse to aware UTC.
        """
        trigger = trigger_from_dict({"type": "time", "deliver_at": "2026-05-01T08:30:00Z"})
        assert trigger.deliver_at == datetime(2026, 5, 1, 8, 30, tzinfo=timezone.utc)

    def test_camel_case_aliases(self):
        """
        HAPPY PATH: camelCase keys from older clients are accepted.
        """
        trigger = trigger_from_dict({
            "type": "composite",
            "operator": "or",
            "triggers": [
                {"type": "heartbeat", "userId": "alice", "timeoutHours": 48},
                {"type": "geographic", "condition": "ENTERS", "latitude": 52.52, "longitude": 13.405,
                 "radiusMeters": 250, "recipientId": "bob"},
                {"type": "time", "delayMinutes": 0},
            ],
        })

        assert trigger.operator is CompositeOperator.OR
        heartbeat, geo, time_trigger = trigger.children
        assert heartbeat == HeartbeatTrigger(monitored_id="alice", timeout_hours=48)
        assert geo == GeographicTrigger(GeoCondition.ENTERS, 52.52, 13.405, 250, "bob")
        assert time_trigger == TimeTrigger(delay_minutes=0)

    def test_depth_at_cap_is_accepted(self):
        """
        EDGE: Exactly max_depth levels parse.
        """
        trigger = trigger_from_dict(nested(16))
        assert trigger_depth(trigger) == 16

    def test_coerce_accepts_built_triggers(self):
        """
        HAPPY PATH: Already-built dataclasses go through the same validation.
        """
        trigger = HeartbeatTrigger("alice", 12)
        assert coerce_trigger(trigger) is trigger

    def test_coerce_normalises_built_deliver_at(self):
        """
        CRITICAL: Naive instants are taken as UTC and aware ones converted to UTC, even nested.
        """
        naive = TimeTrigger(deliver_at=datetime(2026, 3, 1, 12))
        assert coerce_trigger(naive).deliver_at == datetime(2026, 3, 1, 12, tzinfo=timezone.utc)

        plus_two = timezone(timedelta(hours=2))
        nested_trigger = CompositeTrigger(CompositeOperator.OR, (
            HeartbeatTrigger("alice", 12),
            TimeTrigger(deliver_at=datetime(2026, 3, 1, 14, tzinfo=plus_two)),
        ))
        coerced = coerce_trigger(nested_trigger)
        assert coerced.children[1].deliver_at.tzinfo is timezone.utc
        assert coerced.children[1].deliver_at == datetime(2026, 3, 1, 12, tzinfo=timezone.utc)
        assert coerced.children[0] is nested_trigger.children[0]


class TestParseInvalid:

    @pytest.mark.parametrize("data", [
        None,
        "time",
        {},
        {"type": "teleport"},
        {"type": "time"},
        {"type": "time", "delay_minutes": 5, "deliver_at": "2026-01-01T00:00:00Z"},
        {"type": "time", "delay_minutes": -1},
        {"type": "time", "delay_minutes": "soon"},
        {"type": "time", "deliver_at": "next tuesday"},
        {"type": "heartbeat", "timeout_hours": 24},
        {"type": "heartbeat", "monitored_id": "alice", "timeout_hours": 0},
        {"type": "heartbeat", "monitored_id": "alice", "timeout_hours": -3},
        {"type": "geographic", "condition": "near", "lat": 0, "lon": 0, "radius_meters": 10, "tracked_id": "b"},
        {"type": "geographic", "condition": "within", "lat": 91, "lon": 0, "radius_meters": 10, "tracked_id": "b"},
        {"type": "geographic", "condition": "within", "lat": 0, "lon": 0, "radius_meters": 0, "tracked_id": "b"},
        {"type": "geographic", "condition": "within", "lat": 0, "lon": 0, "radius_meters": 10},
        {"type": "composite", "operator": "XOR", "children": [{"type": "time", "delay_minutes": 1}]},
        {"type": "composite", "operator": "AND", "children": []},
        {"type": "composite", "operator": "AND"},
        {"type": "time", "delay_minutes": float("nan")},
        {"type": "time", "delay_minutes": float("inf")},
        {"type": "time", "delay_minutes": 10 ** 9},
        {"type": "heartbeat", "monitored_id": "alice", "timeout_hours": float("nan")},
        {"type": "heartbeat", "monitored_id": "alice", "timeout_hours": 1e308},
        {"type": "geographic", "condition": "within", "lat": 0, "lon": 0, "radius_meters": float("inf"), "tracked_id": "b"},
    ])
    def test_rejected(self, data):
        """
        EDGE: Every malformed shape raises ValidationError.
        """
        with pytest.raises(ValidationError):
            trigger_from_dict(data)

    def test_too_deep(self):
        """
        EDGE: One level past the cap raises TriggerDepthError.
        """
        with pytest.raises(TriggerDepthError):
            trigger_from_dict(nested(17))

    def test_custom_cap(self):
        """
        HAPPY PATH: The cap is a parameter.
        """
        trigger_from_dict(nested(3), max_depth=3)
        with pytest.raises(TriggerDepthError):
            trigger_from_dict(nested(4), max_depth=3)

    def test_coerce_rejects_empty_built_composite(self):
        """
        EDGE: A hand-built empty composite is rejected at creation.
        """
        with pytest.raises(ValidationError):
            coerce_trigger(CompositeTrigger(CompositeOperator.AND, ()))

    @pytest.mark.parametrize("trigger", [
        TimeTrigger(delay_minutes=float("nan")),
        HeartbeatTrigger("alice", float("inf")),
        CompositeTrigger(CompositeOperator.OR, (TimeTrigger(delay_minutes=float("-inf")),)),
    ])
    def test_coerce_rejects_non_finite_built_triggers(self, trigger):
        with pytest.raises(ValidationError):
            coerce_trigger(trigger)

    def test_naive_deliver_at_fails_validation(self):
        """
        EDGE: A built trigger with a naive instant cannot be compared safely.
        """
        with pytest.raises(ValidationError, match="timezone-aware"):
            validate_trigger(TimeTrigger(deliver_at=datetime(2026, 3, 1, 12)))


# =============================================================================
# SERIALIZATION + SUMMARIES
# =============================================================================

class TestSerialization:

    def test_to_dict_parses_back(self):
        """
        HAPPY PATH: trigger_to_dict output is accepted by trigger_from_dict.
        """
        trigger = CompositeTrigger(CompositeOperator.AND, (
            TimeTrigger(deliver_at=datetime(2026, 1, 1, tzinfo=timezone.utc)),
            GeographicTrigger(GeoCondition.OUTSIDE, -33.8688, 151.2093, 2000, "carol"),
        ))
        assert trigger_from_dict(trigger_to_dict(trigger)) == trigger

    def test_to_dict_shape(self):
        """
        HAPPY PATH: snake_case keys and string enums.
        """
        data = trigger_to_dict(HeartbeatTrigger("alice", 48))
        assert data == {"type": "heartbeat", "monitored_id": "alice", "timeout_hours": 48}


class TestDescribe:

    def test_delay(self):
        assert describe_trigger(TimeTrigger(delay_minutes=90)) == "Deliver in 1h 30m"

    def test_deliver_at(self):
        trigger = TimeTrigger(deliver_at=datetime(2026, 5, 1, 8, 30, tzinfo=timezone.utc))
        assert describe_trigger(trigger) == "Deliver at 2026-05-01 08:30 UTC"

    def test_heartbeat(self):
        assert describe_trigger(HeartbeatTrigger("alice", 48)) == \
            "Dead man's switch: 48h timeout (monitoring alice)"

    def test_geographic(self):
        trigger = GeographicTrigger(GeoCondition.ENTERS, 52.52, 13.405, 1000, "bob")
        assert describe_trigger(trigger) == "enters region at 52.5200, 13.4050 (1000m radius)"

    def test_composite(self):
        """
        HAPPY PATH: Children joined by the operator.
        """
        trigger = CompositeTrigger(CompositeOperator.OR, (
            TimeTrigger(delay_minutes=60),
            HeartbeatTrigger("alice", 24),
        ))
        assert describe_trigger(trigger) == \
            "OR: Deliver in 1h 0m OR Dead man's switch: 24h timeout (monitoring alice)"
