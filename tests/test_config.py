import json
import logging

import pytest
from jsonschema import ValidationError

from observer_core import config_utils as cu

logger = logging.getLogger('test')

ENV_NAMES = ('DATA_DIR', 'STATE_FILE', 'STATE_BACKUP_DIR', 'DOCKER_SOCKET', 'COMPOSE_MOUNTS',
             'LOCAL_REFRESH_HOURS', 'UPDATE_INTERVAL_MINUTES', 'UPDATE_BATCH_SIZE', 'STATE_BACKUPS',
             'CHECK_POLICY')


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_NAMES:
        monkeypatch.delenv(name, raising=False)


def write_config(tmp_path, data):
    path = tmp_path / 'config.json'
    path.write_text(json.dumps(data))
    return str(path)


def test_defaults_fill_missing_keys(tmp_path):
    config = cu.load_config(write_config(tmp_path, {'data_dir': str(tmp_path)}), logger)
    assert config.state_file == str(tmp_path / 'db.json')
    assert config.update_batch_size == 5
    assert config.check_policy == 'sequential'
    assert config.compose_mounts == []


def test_invalid_config_is_rejected(tmp_path):
    with pytest.raises(ValidationError):
        cu.load_config(write_config(tmp_path, {'update_batch_size': 0}), logger)
    with pytest.raises(ValidationError):
        cu.load_config(write_config(tmp_path, {'check_policy': 'eager'}), logger)
    with pytest.raises(ValidationError):
        cu.load_config(write_config(tmp_path, {'registries': {'ghcr.io': {'type': 'magic'}}}), logger)


def test_env_overrides(tmp_path, monkeypatch):
    monkeypatch.setenv('COMPOSE_MOUNTS', '/srv/a, /srv/b,')
    monkeypatch.setenv('UPDATE_BATCH_SIZE', '12')
    monkeypatch.setenv('LOCAL_REFRESH_HOURS', '-3')
    monkeypatch.setenv('UPDATE_INTERVAL_MINUTES', 'often')
    monkeypatch.setenv('CHECK_POLICY', 'parallel')
    monkeypatch.setenv('STATE_FILE', str(tmp_path / 'state.json'))
    config = cu.load_config(write_config(tmp_path, {'update_interval_minutes': 15}), logger)
    assert config.compose_mounts == ['/srv/a', '/srv/b']
    assert config.update_batch_size == 12
    assert config.local_refresh_hours == 6
    assert config.update_interval_minutes == 15
    assert config.check_policy == 'parallel'
    assert config.state_file == str(tmp_path / 'state.json')


def test_env_references_in_config_are_resolved(tmp_path, monkeypatch):
    monkeypatch.setenv('HUB_PASSWORD', 's3cret')
    monkeypatch.delenv('UNSET_ROOT_FOR_TEST', raising=False)
    config = cu.load_config(write_config(tmp_path, {
        'registries': {'docker.io': {'username': 'me', 'password': '${HUB_PASSWORD}'}},
        'compose_mounts': ['${UNSET_ROOT_FOR_TEST}'],
    }), logger)
    assert config.registries['docker.io']['password'] == 's3cret'
    assert config.compose_mounts == ['${UNSET_ROOT_FOR_TEST}']


def test_create_default_config(tmp_path):
    path = cu.create_default_config(str(tmp_path / 'etc' / 'config.json'), logger)
    with open(path) as f:
        assert json.load(f) == cu.DEFAULT_CONFIG
    assert cu.load_config(path, logger).update_interval_minutes == 30
