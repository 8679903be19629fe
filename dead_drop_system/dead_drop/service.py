#!/usr/bin/env python3
"""
Dead Drop HTTP Service
Flask API over DeadDropEngine: create/list/cancel drops, heartbeat and
location pings, statistics and audit verification.

Authentication is somebody else's job. The caller's identity arrives in the
X-User-Id header, set by whatever gateway sits in front of this service.
"""

import base64
import binascii
import hashlib
import logging
import time
import uuid
from functools import wraps
from typing import Any, Dict, Optional

from flask import Flask, abort, g, jsonify, request
from werkzeug.exceptions import HTTPException

from dead_drop_system.core.clock import format_timestamp, parse_timestamp
from dead_drop_system.core.datashapes import DeadDrop, DropStatus, PayloadEnvelope
from dead_drop_system.core.error_handler import (
    AuthorizationError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from dead_drop_system.dead_drop.config import get_config
from dead_drop_system.dead_drop.engine import DeadDropEngine
from dead_drop_system.dead_drop.trigger_evaluator import describe_trigger, trigger_to_dict

logger = logging.getLogger(__name__)

USER_HEADER = 'X-User-Id'
_TRUE_VALUES = ('1', 'true', 'yes', 'on')


def log_request(f):
    """Decorator to tag each request with an id and log its duration"""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        request_id = str(uuid.uuid4())
        g.request_id = request_id

        logger.info(f"Dead drop request {request_id}: {request.method} {request.path}")

        start_time = time.time()
        result = f(*args, **kwargs)
        end_time = time.time()

        logger.info(f"Dead drop response {request_id}: Duration {end_time - start_time:.3f}s")
        return result
    return decorated_function


# =============================================================================
# SERIALIZATION HELPERS
# =============================================================================

def drop_to_dict(drop: DeadDrop) -> Dict[str, Any]:
    """API view of a drop. The ciphertext never leaves through listings."""
    return {
        'id': drop.id,
        'creator_id': drop.creator_id,
        'recipient_id': drop.recipient_id,
        'group_id': drop.group_id,
        'status': drop.status.value,
        'trigger': trigger_to_dict(drop.trigger),
        'trigger_summary': describe_trigger(drop.trigger),
        'created_at': format_timestamp(drop.created_at),
        'delivered_at': format_timestamp(drop.delivered_at),
        'cancelled_at': format_timestamp(drop.cancelled_at),
        'expires_at': format_timestamp(drop.expires_at),
        'failure_reason': drop.failure_reason.value if drop.failure_reason else None,
        'require_confirmation': drop.require_confirmation,
        'self_destruct': drop.self_destruct,
        'max_attempts': drop.max_attempts,
        'delivery_attempts': drop.delivery_attempts,
        'last_evaluated_at': format_timestamp(drop.last_evaluated_at),
    }


def _current_user() -> str:
    user_id = request.headers.get(USER_HEADER, '').strip()
    if not user_id:
        abort(401)
    return user_id


def _json_body() -> Dict[str, Any]:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError("No JSON object provided")
    return data


def _client_tag() -> Optional[str]:
    """Truncated SHA-256 of the client address; the address itself is never stored"""
    forwarded = request.headers.get('X-Forwarded-For', '')
    address = forwarded.split(',')[0].strip() or request.headers.get('X-Real-IP') or request.remote_addr
    if not address:
        return None
    return hashlib.sha256(address.encode()).hexdigest()[:16]


def _parse_bool(value: Any, name: str) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    raise ValidationError(f"{name} must be a boolean")


def _error(message: str, status_code: int):
    return jsonify({
        'status': 'error',
        'error': message,
        'request_id': g.get('request_id'),
    }), status_code


# =============================================================================
# APP FACTORY
# =============================================================================

def create_app(engine: DeadDropEngine) -> Flask:
    """Build the Flask app around an already-wired engine"""
    app = Flask(__name__)
    config = engine.config

    # === Error mapping ===

    @app.errorhandler(ValidationError)
    def handle_validation(error):
        return _error(str(error), 400)

    @app.errorhandler(AuthorizationError)
    def handle_authorization(error):
        return _error(str(error), 403)

    @app.errorhandler(NotFoundError)
    def handle_not_found(error):
        return _error(str(error), 404)

    @app.errorhandler(InvalidStateError)
    def handle_invalid_state(error):
        return _error(str(error), 409)

    @app.errorhandler(401)
    def unauthorized(error):
        return _error(f"{USER_HEADER} header required", 401)

    @app.errorhandler(HTTPException)
    def http_error(error):
        return _error(error.description or error.name, error.code)

    @app.errorhandler(Exception)
    def internal_error(error):
        if isinstance(error, HTTPException):
            return http_error(error)
        logger.error(f"Internal server error (request: {g.get('request_id')}): {error}", exc_info=True)
        return _error("Internal server error", 500)

    # === Health ===

    @app.route('/health', methods=['GET'])
    def health_check():
        """Health check endpoint"""
        return jsonify({
            'status': 'healthy',
            'service': 'dead_drop',
            'timestamp': engine.clock().isoformat(),
            'scheduler_running': engine.scheduler.is_running(),
            'config': config.summary(),
        })

    # === Drops ===

    @app.route('/dead-drops', methods=['GET'])
    @log_request
    def list_dead_drops():
        """
        List drops the caller created or will receive
        Query params:
        - status: pending|delivered|cancelled|failed
        - include_cancelled: true to include cancelled drops
        """
        user_id = _current_user()

        status = None
        raw_status = request.args.get('status')
        if raw_status:
            try:
                status = DropStatus(raw_status.lower())
            except ValueError:
                raise ValidationError(f"Unknown status: {raw_status}")

        include_cancelled = request.args.get('include_cancelled', '').lower() in _TRUE_VALUES
        drops = engine.list_for_user(user_id, include_cancelled=include_cancelled, status=status)

        return jsonify({
            'status': 'success',
            'dead_drops': [drop_to_dict(d) for d in drops],
            'count': len(drops),
            'request_id': g.request_id,
        })

    @app.route('/dead-drops', methods=['POST'])
    @log_request
    def create_dead_drop():
        """
        Create a dead drop
        Expected JSON:
        {
            "recipient_id": "bob",
            "encrypted_content": "<base64>",
            "encryption_metadata": {"algorithm": "AES-GCM", "iv": "..."},
            "trigger": {"type": "time", "delay_minutes": 60},
            "expires_at": "2026-01-01T00:00:00Z",   // optional
            "require_confirmation": false,           // optional
            "self_destruct": false,                  // optional
            "max_attempts": 3                        // optional
        }
        """
        user_id = _current_user()
        data = _json_body()

        recipient_id = data.get('recipient_id') or data.get('recipientId')
        encrypted_content = data.get('encrypted_content') or data.get('encryptedContent')
        trigger = data.get('trigger')

        if not recipient_id or not encrypted_content or trigger is None:
            raise ValidationError("recipient_id, encrypted_content and trigger are required")

        try:
            ciphertext = base64.b64decode(encrypted_content, validate=True)
        except (binascii.Error, TypeError, ValueError):
            raise ValidationError("encrypted_content must be base64")

        metadata = data.get('encryption_metadata') or data.get('encryptionMetadata') or {}
        if not isinstance(metadata, dict):
            raise ValidationError("encryption_metadata must be an object")

        expires_at = None
        raw_expires = data.get('expires_at') or data.get('expiresAt')
        if raw_expires:
            try:
                expires_at = parse_timestamp(str(raw_expires))
            except ValueError:
                raise ValidationError(f"expires_at is not an ISO-8601 timestamp: {raw_expires}")

        max_attempts = data.get('max_attempts', data.get('maxAttempts', config.DEFAULT_MAX_ATTEMPTS))

        drop = engine.create(
            user_id,
            recipient_id,
            PayloadEnvelope(ciphertext=ciphertext, metadata=metadata),
            trigger,
            group_id=data.get('group_id') or data.get('groupId'),
            require_confirmation=_parse_bool(
                data.get('require_confirmation', data.get('requireConfirmation')), 'require_confirmation'),
            self_destruct=_parse_bool(
                data.get('self_destruct', data.get('selfDestruct')), 'self_destruct'),
            max_attempts=max_attempts,
            expires_at=expires_at,
        )

        return jsonify({
            'status': 'success',
            'dead_drop': drop_to_dict(drop),
            'request_id': g.request_id,
        }), 201

    @app.route('/dead-drops/<drop_id>', methods=['GET'])
    @log_request
    def get_dead_drop(drop_id):
        user_id = _current_user()
        drop = engine.get_for_user(drop_id, user_id)
        return jsonify({
            'status': 'success',
            'dead_drop': drop_to_dict(drop),
            'request_id': g.request_id,
        })

    @app.route('/dead-drops/<drop_id>', methods=['DELETE'])
    @log_request
    def cancel_dead_drop(drop_id):
        """Cancel a pending drop (creator only)"""
        user_id = _current_user()
        engine.cancel(drop_id, user_id, strict=True)
        return jsonify({
            'status': 'success',
            'cancelled': True,
            'id': drop_id,
            'request_id': g.request_id,
        })

    # === Heartbeat ===

    @app.route('/dead-drops/heartbeat', methods=['POST'])
    @log_request
    def record_heartbeat():
        """Liveness ping for dead man's switches watching the caller"""
        user_id = _current_user()
        heartbeat = engine.record_heartbeat(user_id, connection_tag=_client_tag())
        return jsonify({
            'status': 'success',
            'last_heartbeat': format_timestamp(heartbeat.last_heartbeat),
            'request_id': g.request_id,
        })

    @app.route('/dead-drops/heartbeat', methods=['GET'])
    @log_request
    def get_heartbeat():
        user_id = _current_user()
        heartbeat = engine.get_heartbeat(user_id)
        return jsonify({
            'status': 'success',
            'last_heartbeat': format_timestamp(heartbeat.last_heartbeat) if heartbeat else None,
            'request_id': g.request_id,
        })

    # === Location ===

    @app.route('/dead-drops/location', methods=['POST'])
    @log_request
    def record_location():
        """
        Update the caller's position for geographic triggers
        Expected JSON: {"latitude": 52.52, "longitude": 13.405, "accuracy": 15}
        """
        user_id = _current_user()
        data = _json_body()

        lat = data.get('latitude', data.get('lat'))
        lon = data.get('longitude', data.get('lon'))
        location = engine.record_location(user_id, lat, lon, data.get('accuracy') or 0.0)

        return jsonify({
            'status': 'success',
            'location': {
                'latitude': location.lat,
                'longitude': location.lon,
                'accuracy': location.accuracy,
                'timestamp': format_timestamp(location.timestamp),
            },
            'request_id': g.request_id,
        })

    @app.route('/dead-drops/location', methods=['GET'])
    @log_request
    def get_location():
        user_id = _current_user()
        location = engine.get_location(user_id)
        payload = None
        if location:
            payload = {
                'latitude': location.lat,
                'longitude': location.lon,
                'accuracy': location.accuracy,
                'timestamp': format_timestamp(location.timestamp),
            }
        return jsonify({
            'status': 'success',
            'location': payload,
            'request_id': g.request_id,
        })

    # === Statistics + audit ===

    @app.route('/dead-drops/stats', methods=['GET'])
    @log_request
    def get_stats():
        user_id = _current_user()
        return jsonify({
            'status': 'success',
            'user': engine.user_stats(user_id),
            'system': engine.stats(),
            'request_id': g.request_id,
        })

    @app.route('/audit/verify', methods=['GET'])
    @log_request
    def verify_audit():
        _current_user()
        return jsonify({
            'status': 'success',
            'audit': engine.verify_audit_trail(),
            'request_id': g.request_id,
        })

    return app


def main():
    config = get_config()

    logging.basicConfig(
        level=getattr(logging, str(config.LOG_LEVEL).upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    for issue in config.validate_config():
        logger.warning(f"Config issue: {issue}")

    engine = DeadDropEngine.from_config(config)
    engine.start()

    app = create_app(engine)
    logger.info(f"Starting dead drop service on {config.SERVICE_HOST}:{config.SERVICE_PORT}")
    try:
        app.run(host=config.SERVICE_HOST, port=config.SERVICE_PORT, debug=config.DEBUG, use_reloader=False)
    finally:
        engine.shutdown()


if __name__ == '__main__':
    main()
