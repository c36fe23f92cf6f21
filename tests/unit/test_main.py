"""Tests for session wiring from configuration."""

from tickbot.infrastructure.alerts import TelegramNotifier
from tickbot.infrastructure.config import AppConfig, ObservabilityConfig, SecretsConfig
from tickbot.main import build_session


class TestBuildSession:
    """Tests for build_session."""

    def test_app_id_from_environment_overrides_config(self):
        secrets = SecretsConfig(deriv_api_token="tok", deriv_app_id="4242")

        session = build_session(AppConfig(), secrets)

        assert session.transport.url.endswith("?app_id=4242")
        assert session.transport.api_token == "tok"
        assert session.notifier is None

    def test_without_token_no_authorize(self):
        session = build_session(AppConfig(), SecretsConfig(deriv_api_token=""))
        assert session.transport.api_token is None

    def test_telegram_notifier_when_enabled(self):
        config = AppConfig(observability=ObservabilityConfig(telegram_enabled=True))
        secrets = SecretsConfig(telegram_bot_token="bot", telegram_chat_id="1")

        session = build_session(config, secrets)

        assert isinstance(session.notifier, TelegramNotifier)
        assert session.notifier.enabled
