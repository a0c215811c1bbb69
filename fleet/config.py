"""
Configuration loading: config/settings.yaml plus environment overrides.
"""

import copy
import os
import logging
from pathlib import Path
from typing import Optional, Dict, Any

import yaml

logger = logging.getLogger(__name__)

DEFAULT_CONFIG: Dict[str, Any] = {
    'org_id': 'dev-org',
    'database': {
        'type': 'sqlite',
        'path': 'data/fleet.db',
    },
    'redis_url': None,
    'runtime': {
        'heartbeat_interval': 10,
        'task_interval': 5,
        'chat_interval': 5,
        'max_depth': 5,
        'chat_lookback_seconds': 900,
        'commander_names': [],
        'active_task_slice': 5,
    },
    'brain': {
        'model': 'gpt-4o',
        'timeout': 60,
        'api_key_secret': 'openai_api_key',
    },
    'tools': {
        'log_dir': 'logs',
    },
    'vault': {
        'prefix': '/mission-control',
        'region': None,
    },
    'cloud': {
        'app_name': 'mission-control-agents',
        'image': 'registry.fly.io/mission-control-agent:latest',
        'region': 'iad',
    },
    'reaper': {
        'interval_seconds': 300,
        'timeout_seconds': 900,
    },
    'dashboard': {
        'host': '0.0.0.0',
        'port': 8080,
    },
}

CONFIG_PATHS = [
    Path('config/settings.yaml'),
    Path(__file__).parent.parent / 'config' / 'settings.yaml',
]


def _merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def apply_env_overrides(config: Dict[str, Any]) -> Dict[str, Any]:
    """Environment wins over the settings file."""
    db_host = os.environ.get('DB_HOST')
    if db_host:
        database = config.setdefault('database', {})
        database.update({
            'type': 'postgresql',
            'host': db_host,
            'name': os.environ.get('DB_NAME', database.get('name', 'fleet')),
            'user': os.environ.get('DB_USER', database.get('user', 'fleet')),
        })
        if 'DB_PASSWORD' in os.environ:
            database['password'] = os.environ['DB_PASSWORD']

    if os.environ.get('REDIS_URL'):
        config['redis_url'] = os.environ['REDIS_URL']
    if os.environ.get('FLEET_ORG_ID'):
        config['org_id'] = os.environ['FLEET_ORG_ID']
    if os.environ.get('OPENAI_API_KEY'):
        config.setdefault('brain', {})['api_key'] = os.environ['OPENAI_API_KEY']
    if os.environ.get('FLY_API_TOKEN'):
        config.setdefault('cloud', {})['api_token'] = os.environ['FLY_API_TOKEN']
    if os.environ.get('FLY_APP_NAME'):
        config.setdefault('cloud', {})['app_name'] = os.environ['FLY_APP_NAME']
    return config


def load_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """Load settings.yaml (first one found) merged over defaults, then env."""
    if config_path is None:
        config_path = os.environ.get('FLEET_CONFIG')
    if config_path is None:
        for path in CONFIG_PATHS:
            if path.exists():
                config_path = str(path)
                break

    file_config: Dict[str, Any] = {}
    if config_path and Path(config_path).exists():
        with open(config_path) as f:
            file_config = yaml.safe_load(f) or {}
        logger.debug(f"Loaded config from {config_path}")
    elif config_path:
        logger.warning(f"Config file {config_path} not found, using defaults")

    return apply_env_overrides(_merge(DEFAULT_CONFIG, file_config))
