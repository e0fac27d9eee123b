"""
Call Escalation Relay - Configuration Tests

Tests for Settings and startup validation.
These tests verify:
- Comma-separated settings split into lists
- Production mode switches the app to JSON logs without API docs
- Missing secrets fail fast

Run with: pytest tests/test_config.py -v
"""

import pytest

from callrelay.config import Settings, validate_startup
from callrelay.core.exceptions import ConfigurationError


class TestSettings:
    def test_csv_lists(self):
        settings = Settings(_env_file=None, recipients_on_call=" +15145550003, ,+15145550004 ", urgent_tiers="p1,p2")
        assert settings.on_call_recipients == ["+15145550003", "+15145550004"]
        assert settings.urgent_tier_list == ["P1", "P2"]

    def test_default_municipal_keywords(self):
        assert "municipal" in Settings(_env_file=None).p2_keyword_list

    @pytest.mark.parametrize("env,expected", [
        ("production", True),
        ("PRODUCTION", True),
        ("development", False),
        ("testing", False),
    ])
    def test_is_production(self, env, expected):
        assert Settings(_env_file=None, app_env=env).is_production is expected


class TestProductionApp:
    """Production hides the interactive docs."""

    def test_docs_hidden_in_production(self, test_settings):
        from main import create_app

        test_settings.app_env = "production"
        app = create_app(settings=test_settings)
        assert app.docs_url is None
        assert app.redoc_url is None

    def test_docs_shown_in_debug(self, test_settings):
        from main import create_app

        app = create_app(settings=test_settings)
        assert app.docs_url == "/docs"


class TestValidateStartup:
    def test_missing_secret_is_fatal(self):
        with pytest.raises(ConfigurationError) as exc_info:
            validate_startup(Settings(_env_file=None, webhook_secret=""))
        assert exc_info.value.details["missing"] == ["WEBHOOK_SECRET"]

    def test_supabase_requires_credentials(self):
        settings = Settings(_env_file=None, webhook_secret="s", persistence_backend="supabase")
        with pytest.raises(ConfigurationError):
            validate_startup(settings)

    def test_valid(self, test_settings):
        validate_startup(test_settings)
