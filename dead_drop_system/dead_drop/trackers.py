#!/usr/bin/env python3
"""
Heartbeat and location trackers

Single-latest-value stores keyed by user id. Every update overwrites the
previous sample; nothing is kept historically. Staleness is never enforced
here - the trigger evaluator decides what is too old at read time.
"""

import logging
import threading
from typing import Dict, Optional

from dead_drop_system.core.clock import Clock, utc_now
from dead_drop_system.core.datashapes import UserHeartbeat, UserLocation
from dead_drop_system.core.error_handler import ValidationError
from dead_drop_system.dead_drop.geo import validate_coordinates

logger = logging.getLogger(__name__)


class HeartbeatTracker:
    """Latest liveness signal per monitored identity"""

    def __init__(self, clock: Optional[Clock] = None):
        self.clock = clock or utc_now
        self._heartbeats: Dict[str, UserHeartbeat] = {}
        self._lock = threading.Lock()

    def record(self, user_id: str, connection_tag: Optional[str] = None) -> UserHeartbeat:
        if not user_id:
            raise ValidationError("user_id is required for a heartbeat")

        heartbeat = UserHeartbeat(
            user_id=user_id,
            last_heartbeat=self.clock(),
            connection_tag=connection_tag,
        )
        with self._lock:
            self._heartbeats[user_id] = heartbeat

        logger.debug(f"Heartbeat from {user_id}")
        return heartbeat

    def get(self, user_id: str) -> Optional[UserHeartbeat]:
        with self._lock:
            return self._heartbeats.get(user_id)

    def snapshot(self) -> Dict[str, UserHeartbeat]:
        """Point-in-time copy for the evaluator"""
        with self._lock:
            return dict(self._heartbeats)

    def count(self) -> int:
        with self._lock:
            return len(self._heartbeats)


class LocationTracker:
    """Latest known position per tracked identity"""

    def __init__(self, clock: Optional[Clock] = None):
        self.clock = clock or utc_now
        self._locations: Dict[str, UserLocation] = {}
        self._lock = threading.Lock()

    def record(self, user_id: str, lat: float, lon: float, accuracy: float = 0.0) -> UserLocation:
        if not user_id:
            raise ValidationError("user_id is required for a location update")
        validate_coordinates(lat, lon)
        if accuracy is None:
            accuracy = 0.0
        if isinstance(accuracy, bool) or not isinstance(accuracy, (int, float)) or accuracy < 0:
            raise ValidationError("accuracy must be a non-negative number of meters")

        location = UserLocation(
            user_id=user_id,
            lat=float(lat),
            lon=float(lon),
            accuracy=float(accuracy),
            timestamp=self.clock(),
        )
        with self._lock:
            self._locations[user_id] = location

        return location

    def get(self, user_id: str) -> Optional[UserLocation]:
        with self._lock:
            return self._locations.get(user_id)

    def snapshot(self) -> Dict[str, UserLocation]:
        with self._lock:
            return dict(self._locations)

    def count(self) -> int:
        with self._lock:
            return len(self._locations)
