"""Settings parsing/validation and structured logging.

Validates:
  - BoxPlaneSettings defaults are a valid local config
  - from_env() parses every typed field
  - validate() reports provider and environment requirements
  - configure_logging() renders stdlib records as JSON with extra fields
    and the request id
"""

from __future__ import annotations

import json
import logging

import pytest
import structlog

from boxplane.app.observability import logging as box_logging
from boxplane.app.settings import BoxPlaneSettings


# ── Settings ────────────────────────────────────────────────────────


class TestSettings:
    def test_defaults_valid_locally(self):
        settings = BoxPlaneSettings()
        assert settings.is_local
        assert settings.default_provider == "inmemory"
        assert settings.validate() == []
        assert settings.box_api_url == "http://localhost:8000/box"

    def test_from_env(self):
        settings = BoxPlaneSettings.from_env(
            {
                "ENVIRONMENT": "staging",
                "SERVER_URL": "https://boxes.example.com/",
                "SUPABASE_URL": "https://x.supabase.co",
                "SUPABASE_SERVICE_ROLE_KEY": "svc",
                "BOX_PROVIDER": "sprites",
                "SPRITES_BEARER_TOKEN": "tok",
                "HEALTH_POLL_INTERVAL_SECONDS": "2.5",
                "HEALTH_TIMEOUT_SECONDS": "60",
                "SKILLS_REQUIRE_ANY_SUCCESS": "yes",
                "STALE_DEPLOY_TIMEOUT_SECONDS": "900",
                "CORS_ORIGINS": "https://a.example, https://b.example",
                "LOG_FORMAT": "console",
            }
        )
        assert settings.environment == "staging"
        assert settings.box_api_url == "https://boxes.example.com/box"
        assert settings.default_provider == "sprites"
        assert settings.health_poll_interval_seconds == 2.5
        assert settings.health_timeout_seconds == 60.0
        assert settings.skills_require_any_success is True
        assert settings.stale_deploy_timeout_seconds == 900
        assert settings.cors_origins == ("https://a.example", "https://b.example")
        assert settings.log_json is False
        assert settings.validate() == []

    def test_from_env_defaults(self):
        settings = BoxPlaneSettings.from_env({})
        assert settings == BoxPlaneSettings()

    @pytest.mark.parametrize(
        "overrides, expected",
        [
            ({"default_provider": "nomad"}, "default_provider must be one of"),
            ({"default_provider": "sprites"}, "requires sprites_bearer_token"),
            ({"default_provider": "coolify"}, "coolify provider requires coolify_api_url"),
            ({"health_poll_interval_seconds": 0}, "health_poll_interval_seconds must be > 0"),
            (
                {"health_poll_interval_seconds": 10, "health_timeout_seconds": 5},
                "health_timeout_seconds must be >=",
            ),
            ({"health_crash_loop_threshold": 0}, "health_crash_loop_threshold must be >= 1"),
            ({"environment": "production"}, "production: supabase_url is required"),
            ({"environment": "production"}, "inmemory provider is only allowed locally"),
        ],
    )
    def test_validation_errors(self, overrides, expected):
        errors = BoxPlaneSettings(**overrides).validate()
        assert any(expected in e for e in errors), errors

    def test_frozen(self):
        settings = BoxPlaneSettings()
        with pytest.raises(AttributeError):
            settings.environment = "production"


# ── Logging ─────────────────────────────────────────────────────────


@pytest.fixture
def json_logging():
    root = logging.getLogger()
    saved_handlers = list(root.handlers)
    saved_level = root.level
    box_logging._reset_for_tests()
    box_logging.configure_logging(level="DEBUG", json_output=True)
    yield
    box_logging._reset_for_tests()
    structlog.reset_defaults()
    root.handlers[:] = saved_handlers
    root.setLevel(saved_level)


class TestLogging:
    def test_stdlib_extra_fields_rendered(self, json_logging, capsys):
        logging.getLogger("boxplane.test").info(
            "Step %s completed", "health-check",
            extra={"box_id": "box_1", "attempt": 2, "step_key": "health-check"},
        )
        line = capsys.readouterr().out.strip().splitlines()[-1]
        event = json.loads(line)
        assert event["event"] == "Step health-check completed"
        assert event["box_id"] == "box_1"
        assert event["attempt"] == 2
        assert event["step_key"] == "health-check"
        assert event["level"] == "info"
        assert event["logger"] == "boxplane.test"

    def test_request_id_attached(self, json_logging, capsys):
        token = box_logging.request_id_ctx.set("req-abc12345")
        try:
            logging.getLogger("boxplane.test").warning("hello")
        finally:
            box_logging.request_id_ctx.reset(token)
        event = json.loads(capsys.readouterr().out.strip().splitlines()[-1])
        assert event["request_id"] == "req-abc12345"

    def test_configure_is_idempotent(self, json_logging):
        handlers = list(logging.getLogger().handlers)
        box_logging.configure_logging(level="ERROR")
        assert logging.getLogger().handlers == handlers
        assert logging.getLogger().level == logging.DEBUG
