"""
Configuration Tests
"""

from datetime import timedelta

import pytest

from dead_drop_system.dead_drop import config as dd_config


class TestGetConfig:

    @pytest.mark.parametrize("env,expected", [
        ("development", dd_config.DevelopmentConfig),
        ("production", dd_config.ProductionConfig),
        ("test", dd_config.TestConfig),
        ("staging", dd_config.DevelopmentConfig),
    ])
    def test_by_name(self, env, expected):
        assert dd_config.get_config(env) is expected

    def test_from_environment(self, monkeypatch):
        monkeypatch.setenv("DEAD_DROP_ENV", "production")
        assert dd_config.get_config() is dd_config.ProductionConfig


class TestValidateConfig:

    def test_shipped_configs_valid(self):
        """
        HAPPY PATH: Every shipped configuration passes validation.
        """
        for config in (dd_config.DevelopmentConfig, dd_config.ProductionConfig, dd_config.TestConfig):
            assert config.validate_config() == []

    @pytest.mark.parametrize("overrides,fragment", [
        ({"SERVICE_PORT": 80}, "SERVICE_PORT"),
        ({"EVALUATION_INTERVAL_SECONDS": 0}, "EVALUATION_INTERVAL_SECONDS"),
        ({"DEFAULT_MAX_ATTEMPTS": 0}, "DEFAULT_MAX_ATTEMPTS"),
        ({"MAX_TRIGGER_DEPTH": 0}, "MAX_TRIGGER_DEPTH"),
        ({"DELIVERY_WORKERS": 0}, "DELIVERY_WORKERS"),
        ({"LEASE_TTL_SECONDS": 5, "DELIVERY_TIMEOUT_SECONDS": 10}, "LEASE_TTL_SECONDS"),
        ({"STORE_BACKEND": "redis"}, "STORE_BACKEND"),
    ])
    def test_bad_values_reported(self, overrides, fragment):
        """
        EDGE: Each bad setting produces an issue naming it.
        """
        broken = type("BrokenConfig", (dd_config.DeadDropConfig,), overrides)
        issues = broken.validate_config()
        assert any(fragment in issue for issue in issues)


class TestDerivedValues:

    def test_timedeltas(self):
        config = dd_config.DeadDropConfig
        assert config.location_max_age() == timedelta(seconds=config.LOCATION_MAX_AGE_SECONDS)
        assert config.default_expiry() == timedelta(days=config.DEFAULT_EXPIRY_DAYS)
        assert config.self_destruct_grace() == timedelta(seconds=config.SELF_DESTRUCT_GRACE_SECONDS)
        assert config.lease_ttl() == timedelta(seconds=config.LEASE_TTL_SECONDS)

    def test_summary_has_no_secrets(self):
        summary = dd_config.TestConfig.summary()
        assert summary["store_backend"] == "memory"
        assert "AUDIT_SIGNING_KEY" not in str(summary)
        assert "test-signing-key" not in summary.values()
