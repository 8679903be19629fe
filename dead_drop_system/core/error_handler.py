#!/usr/bin/env python3
"""
ErrorHandler - Exception taxonomy and centralized recovery for the dead drop engine

Two halves:
    1. The exceptions raised across the engine (DeadDropError and children)
    2. ErrorHandler, which the scheduler routes recovered errors through so
       one bad drop never takes down a sweep, while still leaving a trail
       in the logs and a per-category count for operators
"""

import logging
import uuid
from collections import defaultdict
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from dead_drop_system.core.clock import Clock, utc_now


# =============================================================================
# EXCEPTIONS
# =============================================================================

class DeadDropError(Exception):
    """Base class for everything the engine raises on purpose"""
    pass


class ValidationError(DeadDropError):
    """Malformed trigger, missing field or out-of-range value at the boundary"""
    pass


class TriggerDepthError(ValidationError):
    """Composite nesting deeper than the configured cap"""
    pass


class NotFoundError(DeadDropError):
    """Operation on an unknown drop id"""
    pass


class AuthorizationError(DeadDropError):
    """Requester is not allowed to touch this drop (e.g. cancel by non-creator)"""
    pass


class InvalidStateError(DeadDropError):
    """Operation needs a PENDING drop and the drop is already terminal"""
    pass


class DeliveryError(DeadDropError):
    """Base class for delivery problems"""
    pass


class TransientDeliveryError(DeliveryError):
    """Channel unavailable or timed out. Retried on later passes up to max_attempts."""
    pass


class TerminalDeliveryError(DeliveryError):
    """Attempts exhausted or drop expired. Reported via audit, never retried."""
    pass


class AuditWriteError(DeadDropError):
    """Raised when the audit trail cannot persist an entry (disk full, permissions...)"""
    pass


# =============================================================================
# ROUTING
# =============================================================================

class ErrorSeverity(Enum):
    """Error severity levels with clear action mappings"""
    CRITICAL_STOP = "critical_stop"       # Engine cannot continue, human needed
    HIGH_DEGRADE = "high_degrade"         # A drop or subsystem is broken, sweep continues
    MEDIUM_ALERT = "medium_alert"         # Operator should know
    LOW_DEBUG = "low_debug"               # Routine, debug log only


class ErrorCategory(Enum):
    """Where in the engine the error came from"""
    TRIGGER_EVALUATION = "trigger_evaluation"
    EXPIRY = "expiry"
    DELIVERY = "delivery"
    REGISTRY = "registry"
    AUDIT = "audit"
    SCHEDULER = "scheduler"
    GENERAL = "general"


_SEVERITY_LEVELS = {
    ErrorSeverity.CRITICAL_STOP: logging.CRITICAL,
    ErrorSeverity.HIGH_DEGRADE: logging.ERROR,
    ErrorSeverity.MEDIUM_ALERT: logging.WARNING,
    ErrorSeverity.LOW_DEBUG: logging.DEBUG,
}


class ErrorHandler:
    """Centralized handling for errors the engine recovers from"""

    def __init__(self, clock: Optional[Clock] = None, max_recent: int = 100,
                 logger_name: str = "dead_drop_errors"):
        self.clock = clock or utc_now
        self.max_recent = max_recent

        self.error_counts: Dict[str, int] = defaultdict(int)      # category -> count
        self.recent_errors: List[Dict[str, Any]] = []
        self.suppressed_errors: Dict[str, int] = defaultdict(int)
        self.last_error_time: Dict[str, datetime] = {}

        self.logger = logging.getLogger(logger_name)

    def handle_error(self,
                     error: Exception,
                     category: ErrorCategory,
                     severity: ErrorSeverity,
                     context: str = "",
                     operation: str = "",
                     suppress_duplicate_minutes: int = 0) -> bool:
        """
        Record and log an error.

        Args:
            error: The exception that occurred
            category: Which part of the engine raised it
            severity: How bad it is
            context: Extra detail, usually the drop id
            operation: What was being attempted
            suppress_duplicate_minutes: Don't re-log the same category/type within this window

        Returns:
            bool: True if the caller should carry on, False if it should re-raise
        """
        error_key = f"{category.value}_{type(error).__name__}"
        current_time = self.clock()

        self.error_counts[category.value] += 1

        if self._should_suppress_error(error_key, current_time, suppress_duplicate_minutes):
            self.suppressed_errors[error_key] += 1
            return severity != ErrorSeverity.CRITICAL_STOP

        self.last_error_time[error_key] = current_time
        message = self._format_error_message(error, error_key, context, operation)

        error_id = str(uuid.uuid4())
        self.recent_errors.append({
            'error_id': error_id,
            'timestamp': current_time.isoformat(),
            'category': category.value,
            'severity': severity.value,
            'error_type': type(error).__name__,
            'message': str(error),
            'context': context,
            'operation': operation,
        })
        if len(self.recent_errors) > self.max_recent:
            self.recent_errors.pop(0)

        self.logger.log(
            _SEVERITY_LEVELS[severity],
            f"{category.value}: {message}",
            exc_info=severity in (ErrorSeverity.CRITICAL_STOP, ErrorSeverity.HIGH_DEGRADE),
        )

        return severity != ErrorSeverity.CRITICAL_STOP

    def _should_suppress_error(self, error_key: str, current_time: datetime, suppress_minutes: int) -> bool:
        if suppress_minutes <= 0 or error_key not in self.last_error_time:
            return False
        elapsed = (current_time - self.last_error_time[error_key]).total_seconds()
        return elapsed < suppress_minutes * 60

    def _format_error_message(self, error: Exception, error_key: str, context: str, operation: str) -> str:
        base_msg = str(error) or type(error).__name__
        if len(base_msg) > 200:
            base_msg = base_msg[:200] + "..."

        if context:
            base_msg = f"{context}: {base_msg}"
        if operation:
            base_msg = f"During {operation} - {base_msg}"

        suppressed_count = self.suppressed_errors.get(error_key, 0)
        if suppressed_count > 0:
            base_msg += f" [+{suppressed_count} suppressed]"
            self.suppressed_errors[error_key] = 0

        return base_msg

    def get_error_summary(self) -> Dict[str, Any]:
        """Counts per category plus the most recent errors"""
        return {
            'total_errors': sum(self.error_counts.values()),
            'by_category': dict(self.error_counts),
            'recent_errors': self.recent_errors[-10:],
        }

    def reset(self) -> None:
        self.error_counts.clear()
        self.recent_errors.clear()
        self.suppressed_errors.clear()
        self.last_error_time.clear()
