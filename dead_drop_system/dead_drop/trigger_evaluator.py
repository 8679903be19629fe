#!/usr/bin/env python3
"""
Trigger Evaluator - parsing, validation and evaluation of dead drop triggers

The trigger grammar is a small recursive sum type (see datashapes):
    time        -> fixed instant, or N minutes after the drop was created
    heartbeat   -> dead man's switch on a monitored user's liveness signal
    geographic  -> geofence test on a tracked user's latest position
    composite   -> AND/OR over child triggers, nestable up to a depth cap

should_fire() is pure: same trigger, same snapshots, same `now` -> same answer.
It never reads a clock and never touches the trackers directly.

Time and heartbeat conditions are monotone: once true they stay true on
every later pass, which is what lets retry-by-re-evaluation work. Geographic
conditions can flap between passes; a drop with a geographic trigger is
delivered on the next pass that observes the condition true, not "once it
was ever true".
"""

import math
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Mapping, Optional

from dead_drop_system.core.clock import ensure_utc, format_timestamp, parse_timestamp
from dead_drop_system.core.datashapes import (
    CompositeOperator,
    CompositeTrigger,
    GeoCondition,
    GeographicTrigger,
    HeartbeatTrigger,
    TimeTrigger,
    Trigger,
    TriggerType,
    UserHeartbeat,
    UserLocation,
)
from dead_drop_system.core.error_handler import TriggerDepthError, ValidationError
from dead_drop_system.dead_drop.geo import distance_meters, validate_coordinates

DEFAULT_MAX_DEPTH = 16
DEFAULT_LOCATION_MAX_AGE = timedelta(minutes=5)

# Longest delay or heartbeat timeout a trigger may carry
MAX_TRIGGER_SPAN = timedelta(days=3650)
MAX_DELAY_MINUTES = MAX_TRIGGER_SPAN / timedelta(minutes=1)
MAX_TIMEOUT_HOURS = MAX_TRIGGER_SPAN / timedelta(hours=1)

_INSIDE_CONDITIONS = {GeoCondition.ENTERS, GeoCondition.WITHIN}


# =============================================================================
# PARSING + VALIDATION
# =============================================================================

def _first(data: Mapping[str, Any], *keys: str) -> Any:
    """First present key wins; accepts snake_case and the legacy camelCase names"""
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return None


def _is_number(value: Any) -> bool:
    """Finite int or float; bools, NaN and infinities are not numbers here"""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value)


def _validate_time(trigger: TimeTrigger) -> None:
    has_at = trigger.deliver_at is not None
    has_delay = trigger.delay_minutes is not None
    if has_at == has_delay:
        raise ValidationError("time trigger needs exactly one of deliver_at or delay_minutes")
    if has_delay:
        if not _is_number(trigger.delay_minutes):
            raise ValidationError("delay_minutes must be a number")
        if trigger.delay_minutes < 0:
            raise ValidationError("delay_minutes must be >= 0")
        if trigger.delay_minutes > MAX_DELAY_MINUTES:
            raise ValidationError(f"delay_minutes must be at most {MAX_DELAY_MINUTES:.0f}")
    elif not isinstance(trigger.deliver_at, datetime):
        raise ValidationError("deliver_at must be a datetime")
    elif trigger.deliver_at.tzinfo is None or trigger.deliver_at.utcoffset() is None:
        raise ValidationError("deliver_at must be timezone-aware")


def _validate_heartbeat(trigger: HeartbeatTrigger) -> None:
    if not trigger.monitored_id or not isinstance(trigger.monitored_id, str):
        raise ValidationError("heartbeat trigger needs a monitored_id")
    if not _is_number(trigger.timeout_hours) or trigger.timeout_hours <= 0:
        raise ValidationError("timeout_hours must be a positive number")
    if trigger.timeout_hours > MAX_TIMEOUT_HOURS:
        raise ValidationError(f"timeout_hours must be at most {MAX_TIMEOUT_HOURS:.0f}")


def _validate_geographic(trigger: GeographicTrigger) -> None:
    if not isinstance(trigger.condition, GeoCondition):
        raise ValidationError("geographic trigger needs a valid condition")
    validate_coordinates(trigger.lat, trigger.lon)
    if not _is_number(trigger.radius_meters) or trigger.radius_meters <= 0:
        raise ValidationError("radius_meters must be a positive number")
    if not trigger.tracked_id or not isinstance(trigger.tracked_id, str):
        raise ValidationError("geographic trigger needs a tracked_id")


def validate_trigger(trigger: Trigger, max_depth: int = DEFAULT_MAX_DEPTH, _depth: int = 1) -> None:
    """Validate an already-built trigger tree. Raises ValidationError."""
    if _depth > max_depth:
        raise TriggerDepthError(f"trigger nesting exceeds maximum depth of {max_depth}")

    if isinstance(trigger, TimeTrigger):
        _validate_time(trigger)
    elif isinstance(trigger, HeartbeatTrigger):
        _validate_heartbeat(trigger)
    elif isinstance(trigger, GeographicTrigger):
        _validate_geographic(trigger)
    elif isinstance(trigger, CompositeTrigger):
        if not isinstance(trigger.operator, CompositeOperator):
            raise ValidationError("composite trigger needs operator AND or OR")
        if not trigger.children:
            raise ValidationError("composite trigger needs at least one child trigger")
        for child in trigger.children:
            validate_trigger(child, max_depth, _depth + 1)
    else:
        raise ValidationError(f"unknown trigger: {trigger!r}")


def trigger_from_dict(data: Any, max_depth: int = DEFAULT_MAX_DEPTH, _depth: int = 1) -> Trigger:
    """
    Parse the JSON wire form of a trigger.

    Example:
        trigger_from_dict({
            "type": "composite", "operator": "OR",
            "children": [
                {"type": "heartbeat", "monitored_id": "alice", "timeout_hours": 48},
                {"type": "time", "deliver_at": "2026-01-01T00:00:00Z"},
            ],
        })

    Raises:
        ValidationError: malformed trigger
        TriggerDepthError: composite nesting deeper than max_depth
    """
    if _depth > max_depth:
        raise TriggerDepthError(f"trigger nesting exceeds maximum depth of {max_depth}")
    if not isinstance(data, Mapping):
        raise ValidationError("trigger must be an object")

    raw_type = data.get("type")
    try:
        trigger_type = TriggerType(str(raw_type).lower())
    except ValueError:
        raise ValidationError(f"unknown trigger type: {raw_type!r}")

    if trigger_type is TriggerType.TIME:
        raw_at = _first(data, "deliver_at", "deliverAt")
        deliver_at = None
        if raw_at is not None:
            if isinstance(raw_at, datetime):
                deliver_at = ensure_utc(raw_at)
            else:
                try:
                    deliver_at = parse_timestamp(str(raw_at))
                except ValueError:
                    raise ValidationError(f"deliver_at is not an ISO-8601 timestamp: {raw_at!r}")
        trigger = TimeTrigger(
            deliver_at=deliver_at,
            delay_minutes=_first(data, "delay_minutes", "delayMinutes"),
        )
        _validate_time(trigger)
        return trigger

    if trigger_type is TriggerType.HEARTBEAT:
        trigger = HeartbeatTrigger(
            monitored_id=_first(data, "monitored_id", "monitoredId", "user_id", "userId"),
            timeout_hours=_first(data, "timeout_hours", "timeoutHours"),
        )
        _validate_heartbeat(trigger)
        return trigger

    if trigger_type is TriggerType.GEOGRAPHIC:
        raw_condition = data.get("condition")
        try:
            condition = GeoCondition(str(raw_condition).lower())
        except ValueError:
            raise ValidationError(f"unknown geographic condition: {raw_condition!r}")
        trigger = GeographicTrigger(
            condition=condition,
            lat=_first(data, "lat", "latitude"),
            lon=_first(data, "lon", "longitude"),
            radius_meters=_first(data, "radius_meters", "radiusMeters"),
            tracked_id=_first(data, "tracked_id", "trackedId", "recipient_id", "recipientId"),
        )
        _validate_geographic(trigger)
        return trigger

    # composite
    raw_operator = data.get("operator")
    try:
        operator = CompositeOperator(str(raw_operator).upper())
    except ValueError:
        raise ValidationError(f"unknown composite operator: {raw_operator!r}")

    raw_children = _first(data, "children", "triggers")
    if not isinstance(raw_children, (list, tuple)) or not raw_children:
        raise ValidationError("composite trigger needs a non-empty list of child triggers")

    children = tuple(trigger_from_dict(child, max_depth, _depth + 1) for child in raw_children)
    return CompositeTrigger(operator=operator, children=children)


def _with_utc_times(trigger: Trigger, max_depth: int, _depth: int = 1) -> Trigger:
    if _depth > max_depth:
        raise TriggerDepthError(f"trigger nesting exceeds maximum depth of {max_depth}")
    if isinstance(trigger, TimeTrigger) and isinstance(trigger.deliver_at, datetime):
        if trigger.deliver_at.tzinfo is timezone.utc:
            return trigger
        return replace(trigger, deliver_at=ensure_utc(trigger.deliver_at))
    if isinstance(trigger, CompositeTrigger) and isinstance(trigger.children, (tuple, list)):
        children = tuple(_with_utc_times(child, max_depth, _depth + 1) for child in trigger.children)
        unchanged = all(new is old for new, old in zip(children, trigger.children))
        if unchanged and isinstance(trigger.children, tuple):
            return trigger
        return replace(trigger, children=children)
    return trigger


def coerce_trigger(value: Any, max_depth: int = DEFAULT_MAX_DEPTH) -> Trigger:
    """
    Accept either the wire form or a built trigger; validate both the same way.
    Built triggers come back with every deliver_at in UTC (naive means UTC).
    """
    if isinstance(value, (TimeTrigger, HeartbeatTrigger, GeographicTrigger, CompositeTrigger)):
        trigger = _with_utc_times(value, max_depth)
        validate_trigger(trigger, max_depth)
        return trigger
    return trigger_from_dict(value, max_depth)


def trigger_to_dict(trigger: Trigger) -> Dict[str, Any]:
    """Inverse of trigger_from_dict (snake_case keys, ISO timestamps)"""
    if isinstance(trigger, TimeTrigger):
        return {
            "type": TriggerType.TIME.value,
            "deliver_at": format_timestamp(trigger.deliver_at),
            "delay_minutes": trigger.delay_minutes,
        }
    if isinstance(trigger, HeartbeatTrigger):
        return {
            "type": TriggerType.HEARTBEAT.value,
            "monitored_id": trigger.monitored_id,
            "timeout_hours": trigger.timeout_hours,
        }
    if isinstance(trigger, GeographicTrigger):
        return {
            "type": TriggerType.GEOGRAPHIC.value,
            "condition": trigger.condition.value,
            "lat": trigger.lat,
            "lon": trigger.lon,
            "radius_meters": trigger.radius_meters,
            "tracked_id": trigger.tracked_id,
        }
    if isinstance(trigger, CompositeTrigger):
        return {
            "type": TriggerType.COMPOSITE.value,
            "operator": trigger.operator.value,
            "children": [trigger_to_dict(child) for child in trigger.children],
        }
    raise ValidationError(f"unknown trigger: {trigger!r}")


def trigger_depth(trigger: Trigger) -> int:
    if isinstance(trigger, CompositeTrigger):
        return 1 + max((trigger_depth(child) for child in trigger.children), default=0)
    return 1


def describe_trigger(trigger: Trigger) -> str:
    """Human-readable summary for listings and delivered messages"""
    if isinstance(trigger, TimeTrigger):
        if trigger.deliver_at is not None:
            return f"Deliver at {trigger.deliver_at.strftime('%Y-%m-%d %H:%M UTC')}"
        if trigger.delay_minutes is not None:
            hours = int(trigger.delay_minutes // 60)
            minutes = int(trigger.delay_minutes % 60)
            return f"Deliver in {hours}h {minutes}m"
        return "Time-based trigger"

    if isinstance(trigger, HeartbeatTrigger):
        return f"Dead man's switch: {trigger.timeout_hours:g}h timeout (monitoring {trigger.monitored_id})"

    if isinstance(trigger, GeographicTrigger):
        return (f"{trigger.condition.value} region at {trigger.lat:.4f}, {trigger.lon:.4f} "
                f"({trigger.radius_meters:g}m radius)")

    if isinstance(trigger, CompositeTrigger):
        op = trigger.operator.value
        if not trigger.children:
            return f"{op}: (no conditions)"
        return f"{op}: " + f" {op} ".join(describe_trigger(child) for child in trigger.children)

    return "Unknown trigger"


# =============================================================================
# EVALUATION
# =============================================================================

def should_fire(
    trigger: Trigger,
    drop_created_at: datetime,
    now: datetime,
    heartbeats: Mapping[str, UserHeartbeat],
    locations: Mapping[str, UserLocation],
    location_max_age: timedelta = DEFAULT_LOCATION_MAX_AGE,
    max_depth: int = DEFAULT_MAX_DEPTH,
    _depth: int = 1,
) -> bool:
    """
    Decide whether a trigger is satisfied right now.

    Args:
        trigger: Trigger tree to evaluate
        drop_created_at: Creation time of the drop (anchor for delays and
            for heartbeat monitoring when no heartbeat was ever seen)
        now: Evaluation instant
        heartbeats: user_id -> latest heartbeat snapshot
        locations: user_id -> latest location snapshot
        location_max_age: Older samples fail closed
        max_depth: Composite nesting cap

    Raises:
        TriggerDepthError: tree deeper than max_depth
        ValidationError: not a trigger
    """
    if _depth > max_depth:
        raise TriggerDepthError(f"trigger nesting exceeds maximum depth of {max_depth}")

    if isinstance(trigger, TimeTrigger):
        if trigger.deliver_at is not None:
            return now >= trigger.deliver_at
        if trigger.delay_minutes is not None:
            return now >= drop_created_at + timedelta(minutes=trigger.delay_minutes)
        return False

    if isinstance(trigger, HeartbeatTrigger):
        heartbeat = heartbeats.get(trigger.monitored_id)
        # Never checked in at all: measure from creation, fail toward delivery
        reference = heartbeat.last_heartbeat if heartbeat else drop_created_at
        return now - reference >= timedelta(hours=trigger.timeout_hours)

    if isinstance(trigger, GeographicTrigger):
        location = locations.get(trigger.tracked_id)
        if location is None:
            return False
        if now - location.timestamp > location_max_age:
            return False

        distance = distance_meters(location.lat, location.lon, trigger.lat, trigger.lon)
        inside = distance <= trigger.radius_meters
        return inside if trigger.condition in _INSIDE_CONDITIONS else not inside

    if isinstance(trigger, CompositeTrigger):
        results = [
            should_fire(child, drop_created_at, now, heartbeats, locations,
                        location_max_age, max_depth, _depth + 1)
            for child in trigger.children
        ]
        if not results:
            return False
        if trigger.operator is CompositeOperator.AND:
            return all(results)
        return any(results)

    raise ValidationError(f"unknown trigger: {trigger!r}")


class TriggerEvaluator:
    """should_fire() bound to a freshness policy and depth cap"""

    def __init__(self, location_max_age: Optional[timedelta] = None, max_depth: int = DEFAULT_MAX_DEPTH):
        self.location_max_age = location_max_age or DEFAULT_LOCATION_MAX_AGE
        self.max_depth = max_depth

    def should_fire(self, trigger: Trigger, drop_created_at: datetime, now: datetime,
                    heartbeats: Mapping[str, UserHeartbeat],
                    locations: Mapping[str, UserLocation]) -> bool:
        return should_fire(trigger, drop_created_at, now, heartbeats, locations,
                           location_max_age=self.location_max_age, max_depth=self.max_depth)

    def parse(self, value: Any) -> Trigger:
        return coerce_trigger(value, self.max_depth)
