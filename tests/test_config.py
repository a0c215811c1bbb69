"""Settings file loading and environment overrides."""

import pytest

from fleet.config import load_config

ENV_VARS = [
    'DB_HOST', 'DB_NAME', 'DB_USER', 'DB_PASSWORD', 'REDIS_URL', 'FLEET_ORG_ID',
    'OPENAI_API_KEY', 'FLY_API_TOKEN', 'FLY_APP_NAME', 'FLEET_CONFIG',
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


def test_file_merges_over_defaults(tmp_path):
    path = tmp_path / "settings.yaml"
    path.write_text("org_id: acme\nruntime:\n  max_depth: 3\n")

    config = load_config(str(path))

    assert config['org_id'] == 'acme'
    assert config['runtime']['max_depth'] == 3
    assert config['runtime']['heartbeat_interval'] == 10
    assert config['database']['type'] == 'sqlite'


def test_missing_file_uses_defaults(tmp_path):
    config = load_config(str(tmp_path / "absent.yaml"))
    assert config['org_id'] == 'dev-org'
    assert config['reaper']['timeout_seconds'] == 900


def test_env_overrides(tmp_path, monkeypatch):
    monkeypatch.setenv('DB_HOST', 'db.internal')
    monkeypatch.setenv('DB_PASSWORD', 's3cret')
    monkeypatch.setenv('REDIS_URL', 'redis://cache:6379/0')
    monkeypatch.setenv('FLEET_ORG_ID', 'acme')
    monkeypatch.setenv('OPENAI_API_KEY', 'sk-test')
    monkeypatch.setenv('FLY_API_TOKEN', 'fly-token')

    config = load_config(str(tmp_path / "absent.yaml"))

    assert config['database']['type'] == 'postgresql'
    assert config['database']['host'] == 'db.internal'
    assert config['database']['password'] == 's3cret'
    assert config['redis_url'] == 'redis://cache:6379/0'
    assert config['org_id'] == 'acme'
    assert config['brain']['api_key'] == 'sk-test'
    assert config['cloud']['api_token'] == 'fly-token'


def test_fleet_config_env_path(tmp_path, monkeypatch):
    path = tmp_path / "custom.yaml"
    path.write_text("org_id: from-env-path\n")
    monkeypatch.setenv('FLEET_CONFIG', str(path))
    assert load_config()['org_id'] == 'from-env-path'
