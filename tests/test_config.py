"""Tests for configuration loading and validation."""

import pytest
from pydantic import ValidationError

from formflow.core.exceptions import ConfigurationError
from formflow.config import (
    AppConfig,
    ConditionWaitingPolicy,
    DatabaseType,
    LogLevel,
    get_config,
    get_preset_config,
    load_config,
    reset_config,
    validate_config,
)


@pytest.fixture(autouse=True)
def fresh_config():
    reset_config()
    yield
    reset_config()


class TestAppConfig:

    def test_defaults(self):
        config = AppConfig()
        assert config.max_loop_iterations == 100
        assert config.cancel_siblings_on_terminal is True
        assert config.condition_waiting_policy is ConditionWaitingPolicy.SUSPEND
        assert config.until_event_ceiling_days == 365
        assert config.database_type is DatabaseType.SQLITE

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("FORMFLOW_PORT", "9100")
        monkeypatch.setenv("FORMFLOW_DEBUG", "yes")
        monkeypatch.setenv("FORMFLOW_LOG_LEVEL", "debug")
        monkeypatch.setenv("FORMFLOW_MAX_LOOP_ITERATIONS", "25")
        monkeypatch.setenv("FORMFLOW_CANCEL_SIBLINGS_ON_TERMINAL", "false")
        monkeypatch.setenv("FORMFLOW_CONDITION_WAITING_POLICY", "false_branch")
        monkeypatch.setenv("FORMFLOW_CORS_ORIGINS", "https://a.example,https://b.example")

        config = AppConfig.from_env()
        assert config.port == 9100
        assert config.debug is True
        assert config.log_level is LogLevel.DEBUG
        assert config.max_loop_iterations == 25
        assert config.cancel_siblings_on_terminal is False
        assert config.condition_waiting_policy is ConditionWaitingPolicy.FALSE_BRANCH
        assert config.cors_origins == ["https://a.example", "https://b.example"]

    def test_unprefixed_variables_are_ignored(self, monkeypatch):
        monkeypatch.setenv("PORT", "9999")
        monkeypatch.delenv("FORMFLOW_PORT", raising=False)
        assert AppConfig.from_env().port == 8000

    @pytest.mark.parametrize("url", ["", "mongodb://localhost/db"])
    def test_rejects_unsupported_database(self, url):
        with pytest.raises(ValidationError):
            AppConfig(database_url=url)

    def test_accepts_driver_suffix(self):
        config = AppConfig(database_url="postgresql+psycopg2://u:p@localhost/formflow")
        assert config.database_type is DatabaseType.POSTGRESQL

    @pytest.mark.parametrize("field", ["max_loop_iterations", "until_event_ceiling_days"])
    def test_rejects_non_positive(self, field):
        with pytest.raises(ValidationError):
            AppConfig(**{field: 0})

    def test_rejects_bad_port(self):
        with pytest.raises(ValidationError):
            AppConfig(port=70000)

    def test_uvicorn_config(self):
        config = AppConfig(port=8123, log_level=LogLevel.WARNING)
        assert config.get_uvicorn_config() == {
            "host": "0.0.0.0",
            "port": 8123,
            "reload": False,
            "log_level": "warning",
            "access_log": False,
        }


class TestGlobalConfig:

    def test_get_config_is_cached(self):
        assert get_config() is get_config()

    def test_load_config_reads_dotenv(self, tmp_path, monkeypatch):
        # set then delete so the variable written by load_dotenv is removed afterwards
        monkeypatch.setenv("FORMFLOW_APP_NAME", "unset")
        monkeypatch.delenv("FORMFLOW_APP_NAME")
        env_file = tmp_path / "formflow.env"
        env_file.write_text("FORMFLOW_APP_NAME=Dotenv Engine\n")

        config = load_config(str(env_file))

        assert config.app_name == "Dotenv Engine"
        assert get_config() is config


class TestValidateConfig:

    def test_testing_config_is_valid(self):
        validate_config(get_preset_config("testing"))

    def test_creates_database_directory(self, tmp_path):
        db_dir = tmp_path / "data"
        validate_config(AppConfig(database_url=f"sqlite:///{db_dir}/formflow.db"))
        assert db_dir.is_dir()

    def test_rejects_runaway_loop_ceiling(self):
        with pytest.raises(ConfigurationError) as exc_info:
            validate_config(AppConfig(database_url="sqlite:///:memory:", max_loop_iterations=20000))
        assert "Loop ceiling" in str(exc_info.value)

    def test_lowercase_log_level_is_accepted(self):
        assert AppConfig(log_level="warning").log_level is LogLevel.WARNING


class TestPresets:

    def test_production_restricts_cors(self):
        config = get_preset_config("production")
        assert config.cors_origins == []
        assert config.log_structured is True

    def test_unknown_preset(self):
        with pytest.raises(ConfigurationError):
            get_preset_config("staging")
