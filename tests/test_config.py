from __future__ import annotations


def _reset_settings(monkeypatch, **env):
    from property_tracker.config import reset_settings_cache

    for k, v in env.items():
        if v is None:
            monkeypatch.delenv(k, raising=False)
        else:
            monkeypatch.setenv(k, str(v))
    reset_settings_cache()


def test_defaults(monkeypatch):
    from property_tracker.config import get_settings

    _reset_settings(monkeypatch)
    s = get_settings()
    assert s.sqlite_path == "./properties.sqlite"
    assert s.max_retries == 4
    assert s.busy_timeout_seconds == 5.0
    assert s.strict_fields is False
    assert s.log_level == "INFO"


def test_env_overrides(monkeypatch):
    from property_tracker.config import get_settings

    _reset_settings(
        monkeypatch,
        PT_SQLITE_PATH="/tmp/x.sqlite",
        PT_MAX_RETRIES="7",
        PT_RETRY_BASE_DELAY="0.5",
        PT_STRICT_FIELDS="yes",
        PT_LOG_JSON="1",
        PT_LOG_LEVEL="debug",
    )
    s = get_settings()
    assert s.sqlite_path == "/tmp/x.sqlite"
    assert s.max_retries == 7
    assert s.retry_base_delay == 0.5
    assert s.strict_fields is True
    assert s.log_json is True
    assert s.log_level == "DEBUG"


def test_garbage_values_fall_back_to_defaults(monkeypatch):
    from property_tracker.config import get_settings

    _reset_settings(monkeypatch, PT_MAX_RETRIES="many", PT_STRICT_FIELDS="perhaps", PT_RETRY_FACTOR="0.1")
    s = get_settings()
    assert s.max_retries == 4
    assert s.strict_fields is False
    assert s.retry_factor == 1.0


def test_settings_are_cached_until_reset(monkeypatch):
    from property_tracker.config import get_settings

    _reset_settings(monkeypatch, PT_MAX_RETRIES="2")
    assert get_settings().max_retries == 2
    monkeypatch.setenv("PT_MAX_RETRIES", "9")
    assert get_settings().max_retries == 2
    _reset_settings(monkeypatch)
    assert get_settings().max_retries == 9
