"""
Root conftest — isolate Team Control settings from the developer's or CI
environment so that Settings() behaves the same everywhere.
"""
import pytest

_SETTINGS_ENV_VARS = [
    "TEAMCONTROL_CONFIG",
    "PROTOCOL__CLIENT_ID",
    "CONNECTION__RECONNECT_DELAY_SECONDS",
    "HEALTH__INTERVAL_SECONDS",
    "STORAGE__GATEWAYS_FILE",
    "DISCOVERY__ENABLED",
    "LOGGING__LEVEL",
]


@pytest.fixture(autouse=True)
def _isolate_settings_env(monkeypatch):
    """Remove settings overrides from the environment for every test.
    Also disables .env file loading so a local developer .env does not
    leak into tests."""
    for var in _SETTINGS_ENV_VARS:
        monkeypatch.delenv(var, raising=False)

    import config.settings as settings_module
    from pydantic_settings import SettingsConfigDict
    patched_config = SettingsConfigDict(
        env_file=None,
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
        case_sensitive=False,
    )
    monkeypatch.setattr(settings_module.Settings, "model_config", patched_config)
    monkeypatch.setattr(settings_module, "_singleton", None)
