import json

from shared.config.sync import load_sync_config


def test_defaults():
    config = load_sync_config({}, env={})

    assert config.api.base_url == "http://localhost:3000"
    assert config.api.prefix == "/api"
    assert config.api.token is None
    assert config.api.timeout_seconds == 10.0
    assert config.feed.ready_timeout_seconds == 5.0
    assert config.notifications.enabled
    assert config.notifications.presenter == "auto"
    assert config.notifications.body_limit == 120


def test_file_values_and_env_overrides():
    raw = {
        "api": {"base_url": "https://chat.example/", "prefix": "v2/", "timeout_seconds": 3},
        "feed": {"max_failures": 2, "max_backoff_seconds": 8},
        "notifications": {"presenter": "log", "body_limit": 80},
    }
    env = {
        "CHANNELSYNC_API_TOKEN": "abc",
        "CHANNELSYNC_TIMEOUT": "4.5",
        "CHANNELSYNC_NOTIFICATIONS": "off",
    }

    config = load_sync_config(raw, env=env)

    assert config.api.base_url == "https://chat.example"
    assert config.api.prefix == "/v2"
    assert config.api.token == "abc"
    assert config.api.timeout_seconds == 4.5
    assert config.feed.max_failures == 2
    assert config.feed.max_backoff_seconds == 8.0
    assert config.notifications.presenter == "log"
    assert config.notifications.body_limit == 80
    assert not config.notifications.enabled


def test_invalid_values_fall_back_to_defaults():
    raw = {
        "api": {"timeout_seconds": "soon"},
        "feed": {"max_failures": -1},
        "notifications": {"presenter": "pigeon", "enabled": "maybe"},
    }

    config = load_sync_config(raw, env={"CHANNELSYNC_FEED_READY_TIMEOUT": "0"})

    assert config.api.timeout_seconds == 10.0
    assert config.feed.max_failures == 5
    assert config.feed.ready_timeout_seconds == 5.0
    assert config.notifications.presenter == "auto"
    assert config.notifications.enabled


def test_empty_prefix_allowed():
    config = load_sync_config({}, env={"CHANNELSYNC_API_PREFIX": ""})

    assert config.api.prefix == ""


def test_config_file_from_env(tmp_path):
    path = tmp_path / "channelsync.json"
    path.write_text(json.dumps({"api": {"base_url": "http://files.test"}}), encoding="utf-8")

    config = load_sync_config(env={"CHANNELSYNC_CONFIG": str(path)})

    assert config.api.base_url == "http://files.test"


def test_malformed_config_file_uses_defaults(tmp_path):
    path = tmp_path / "channelsync.json"
    path.write_text("{not json", encoding="utf-8")

    config = load_sync_config(env={"CHANNELSYNC_CONFIG": str(path)})

    assert config.api.base_url == "http://localhost:3000"


def test_missing_config_file_uses_defaults(tmp_path):
    config = load_sync_config(env={"CHANNELSYNC_CONFIG": str(tmp_path / "absent.json")})

    assert config.api.prefix == "/api"
