#!/usr/bin/env python3
"""
Dead Drop Engine Configuration
Environment-driven settings for the scheduler, delivery and HTTP service
"""
import os
from datetime import timedelta

from dotenv import load_dotenv

# Values already in the environment take precedence over .env
load_dotenv()


class DeadDropConfig:
    """Configuration for the dead drop engine"""

    # Service Configuration
    SERVICE_PORT = int(os.getenv('DEAD_DROP_PORT', 8010))
    SERVICE_HOST = os.getenv('DEAD_DROP_HOST', '0.0.0.0')
    DEBUG = False

    # Scheduler
    EVALUATION_INTERVAL_SECONDS = float(os.getenv('DEAD_DROP_EVALUATION_INTERVAL', 60))
    INSTANCE_ID = os.getenv('DEAD_DROP_INSTANCE_ID', 'scheduler-1')
    LEASE_TTL_SECONDS = int(os.getenv('DEAD_DROP_LEASE_TTL', 300))

    # Drop lifecycle
    DEFAULT_EXPIRY_DAYS = int(os.getenv('DEAD_DROP_DEFAULT_EXPIRY_DAYS', 30))
    DEFAULT_MAX_ATTEMPTS = int(os.getenv('DEAD_DROP_DEFAULT_MAX_ATTEMPTS', 3))
    SELF_DESTRUCT_GRACE_SECONDS = int(os.getenv('DEAD_DROP_SELF_DESTRUCT_GRACE', 60))

    # Trigger evaluation
    LOCATION_MAX_AGE_SECONDS = int(os.getenv('DEAD_DROP_LOCATION_MAX_AGE', 300))
    MAX_TRIGGER_DEPTH = int(os.getenv('DEAD_DROP_MAX_TRIGGER_DEPTH', 16))

    # Delivery
    DELIVERY_URL = os.getenv('DEAD_DROP_DELIVERY_URL', 'http://localhost:8011')
    DELIVERY_TIMEOUT_SECONDS = float(os.getenv('DEAD_DROP_DELIVERY_TIMEOUT', 10))
    DELIVERY_WORKERS = int(os.getenv('DEAD_DROP_DELIVERY_WORKERS', 8))

    # Storage
    STORE_BACKEND = os.getenv('DEAD_DROP_STORE', 'sqlite')
    DB_PATH = os.getenv('DEAD_DROP_DB_PATH', os.path.expanduser('~/.dead_drop/dead_drops.db'))
    AUDIT_LOG_PATH = os.getenv('DEAD_DROP_AUDIT_PATH', os.path.expanduser('~/.dead_drop/audit.jsonl'))
    AUDIT_SIGNING_KEY = os.getenv('DEAD_DROP_AUDIT_KEY')

    # Logging Configuration
    LOG_LEVEL = os.getenv('DEAD_DROP_LOG_LEVEL', 'INFO')

    @classmethod
    def location_max_age(cls) -> timedelta:
        return timedelta(seconds=cls.LOCATION_MAX_AGE_SECONDS)

    @classmethod
    def default_expiry(cls) -> timedelta:
        return timedelta(days=cls.DEFAULT_EXPIRY_DAYS)

    @classmethod
    def self_destruct_grace(cls) -> timedelta:
        return timedelta(seconds=cls.SELF_DESTRUCT_GRACE_SECONDS)

    @classmethod
    def lease_ttl(cls) -> timedelta:
        return timedelta(seconds=cls.LEASE_TTL_SECONDS)

    @classmethod
    def summary(cls):
        """Settings worth showing on /health and in the console"""
        return {
            'store_backend': cls.STORE_BACKEND,
            'evaluation_interval_seconds': cls.EVALUATION_INTERVAL_SECONDS,
            'instance_id': cls.INSTANCE_ID,
            'default_expiry_days': cls.DEFAULT_EXPIRY_DAYS,
            'location_max_age_seconds': cls.LOCATION_MAX_AGE_SECONDS,
            'max_trigger_depth': cls.MAX_TRIGGER_DEPTH,
            'delivery_timeout_seconds': cls.DELIVERY_TIMEOUT_SECONDS,
        }

    @classmethod
    def validate_config(cls):
        """Validate configuration settings"""
        issues = []

        if cls.SERVICE_PORT < 1024 or cls.SERVICE_PORT > 65535:
            issues.append("SERVICE_PORT must be between 1024 and 65535")

        if cls.EVALUATION_INTERVAL_SECONDS <= 0:
            issues.append("EVALUATION_INTERVAL_SECONDS must be positive")

        if cls.DEFAULT_EXPIRY_DAYS <= 0:
            issues.append("DEFAULT_EXPIRY_DAYS must be positive")

        if cls.DEFAULT_MAX_ATTEMPTS < 1:
            issues.append("DEFAULT_MAX_ATTEMPTS must be at least 1")

        if cls.LOCATION_MAX_AGE_SECONDS <= 0:
            issues.append("LOCATION_MAX_AGE_SECONDS must be positive")

        if cls.MAX_TRIGGER_DEPTH < 1:
            issues.append("MAX_TRIGGER_DEPTH must be at least 1")

        if cls.DELIVERY_TIMEOUT_SECONDS <= 0:
            issues.append("DELIVERY_TIMEOUT_SECONDS must be positive")

        if cls.DELIVERY_WORKERS < 1:
            issues.append("DELIVERY_WORKERS must be at least 1")

        if cls.LEASE_TTL_SECONDS <= cls.DELIVERY_TIMEOUT_SECONDS:
            issues.append("LEASE_TTL_SECONDS should exceed DELIVERY_TIMEOUT_SECONDS")

        if cls.STORE_BACKEND not in ('memory', 'sqlite'):
            issues.append("STORE_BACKEND must be 'memory' or 'sqlite'")

        return issues


# Environment-specific configurations
class DevelopmentConfig(DeadDropConfig):
    """Development environment configuration"""
    DEBUG = True
    LOG_LEVEL = 'DEBUG'


class ProductionConfig(DeadDropConfig):
    """Production environment configuration"""
    DEBUG = False
    LOG_LEVEL = 'INFO'


class TestConfig(DeadDropConfig):
    """Test environment configuration"""
    DEBUG = True
    LOG_LEVEL = 'DEBUG'
    STORE_BACKEND = 'memory'
    AUDIT_LOG_PATH = None
    AUDIT_SIGNING_KEY = 'test-signing-key'
    EVALUATION_INTERVAL_SECONDS = 1
    DELIVERY_TIMEOUT_SECONDS = 2
    DELIVERY_WORKERS = 4


# Configuration factory
def get_config(env=None):
    """Get configuration based on environment"""
    env = env or os.getenv('DEAD_DROP_ENV', 'development')

    configs = {
        'development': DevelopmentConfig,
        'production': ProductionConfig,
        'test': TestConfig
    }

    return configs.get(env, DevelopmentConfig)
