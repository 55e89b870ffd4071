"""Settings parsing and validation."""

import pytest
from pydantic import ValidationError

from conftest import TEST_KEY
from gatehouse.config import Environment, Settings


class TestSettings:
    def test_defaults(self):
        settings = Settings(token_symmetric_key=TEST_KEY)
        assert settings.environment == Environment.DEVELOPMENT
        assert settings.is_production is False
        assert settings.access_token_ttl_minutes == 15
        assert settings.refresh_token_ttl_minutes == 7 * 24 * 60
        assert settings.block_session_on_logout is True
        assert settings.reset_code_length == 6
        rule = settings.rate_limit_rule("generate-desc")
        assert rule.limit == 5
        assert rule.window_seconds == 86400

    def test_missing_key_rejected(self):
        with pytest.raises(ValidationError):
            Settings()

    def test_short_key_rejected(self):
        with pytest.raises(ValidationError):
            Settings(token_symmetric_key="short")

    def test_previous_keys_split(self):
        settings = Settings(
            token_symmetric_key=TEST_KEY, token_previous_keys=" a , b ,,"
        )
        assert settings.token_previous_keys == ["a", "b"]

    @pytest.mark.parametrize("length", [0, 10])
    def test_code_length_bounds(self, length):
        with pytest.raises(ValidationError):
            Settings(token_symmetric_key=TEST_KEY, reset_code_length=length)

    def test_rate_limits_from_json(self):
        settings = Settings(
            token_symmetric_key=TEST_KEY,
            rate_limits='{"generate-desc": {"limit": 2}, "export": {"limit": 1, "window_seconds": 10}}',
        )
        assert settings.rate_limit_rule("generate-desc").window_seconds == 60
        assert settings.rate_limit_rule("export").limit == 1
        assert settings.rate_limit_rule("missing") is None

    def test_rate_limits_bad_json(self):
        with pytest.raises(ValidationError):
            Settings(token_symmetric_key=TEST_KEY, rate_limits="{not json")

    def test_environment_case_insensitive(self):
        settings = Settings(token_symmetric_key=TEST_KEY, environment=" Production ")
        assert settings.is_production is True


class TestFromEnv:
    def test_reads_environment(self, monkeypatch, tmp_path):
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("TOKEN_SYMMETRIC_KEY", TEST_KEY)
        monkeypatch.setenv("ACCESS_TOKEN_TTL_MINUTES", "5")
        monkeypatch.setenv("BLOCK_SESSION_ON_LOGOUT", "false")
        settings = Settings.from_env()
        assert settings.access_token_ttl_minutes == 5
        assert settings.block_session_on_logout is False

    def test_reads_dotenv_file(self, monkeypatch, tmp_path):
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("TOKEN_SYMMETRIC_KEY", TEST_KEY)
        monkeypatch.delenv("RESET_CODE_LENGTH", raising=False)
        (tmp_path / ".env").write_text("RESET_CODE_LENGTH=8\n")
        assert Settings.from_env().reset_code_length == 8

    def test_environment_wins_over_dotenv(self, monkeypatch, tmp_path):
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("TOKEN_SYMMETRIC_KEY", TEST_KEY)
        monkeypatch.setenv("RESET_CODE_LENGTH", "4")
        (tmp_path / ".env").write_text("RESET_CODE_LENGTH=8\n")
        assert Settings.from_env().reset_code_length == 4
