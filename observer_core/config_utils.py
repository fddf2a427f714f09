import json
import os
import re
from typing import Any, Dict, List, Optional

from jsonschema import validate as jsonschema_validate, ValidationError

from observer_core.models import ObserverConfig
from observer_core.registry_utils import REGISTRY_TYPES
from observer_core.scheduler_utils import POLICY_PARALLEL, POLICY_SEQUENTIAL


CONFIG_SCHEMA = {
    'type': 'object',
    'properties': {
        'data_dir': {'type': 'string'},
        'state_file': {'type': 'string'},
        'state_backup_dir': {'type': 'string'},
        'state_backups': {'type': 'integer', 'minimum': 0},
        'docker_socket': {'type': 'string'},
        'compose_mounts': {'type': 'array', 'items': {'type': 'string'}},
        'scan_depth': {'type': 'integer', 'minimum': 0},
        'local_refresh_hours': {'type': 'number', 'exclusiveMinimum': 0},
        'update_interval_minutes': {'type': 'number', 'exclusiveMinimum': 0},
        'update_batch_size': {'type': 'integer', 'minimum': 1},
        'check_policy': {'enum': [POLICY_SEQUENTIAL, POLICY_PARALLEL]},
        'max_workers': {'type': 'integer', 'minimum': 1},
        'max_per_host': {'type': 'integer', 'minimum': 1},
        'request_timeout': {'type': 'integer', 'minimum': 1},
        'rate_limit_cooldown_sec': {'type': 'integer', 'minimum': 0},
        'registries': {
            'type': 'object',
            'additionalProperties': {
                'type': 'object',
                'properties': {
                    'type': {'enum': list(REGISTRY_TYPES)},
                    'username': {'type': 'string'},
                    'password': {'type': 'string'},
                    'region': {'type': 'string'},
                    'aws_access_key_id': {'type': 'string'},
                    'aws_secret_access_key': {'type': 'string'},
                    'service_account_path': {'type': 'string'},
                    'insecure': {'type': 'boolean'},
                },
            },
        },
    },
}

DEFAULT_CONFIG = {
    'data_dir': '/data',
    'compose_mounts': [],
    'local_refresh_hours': 6,
    'update_interval_minutes': 30,
    'update_batch_size': 5,
    'check_policy': POLICY_SEQUENTIAL,
    'registries': {},
}


def resolve_env_vars(config_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively resolve ${VAR} environment variables in a dict."""
    resolved: Dict[str, Any] = {}

    def replace_env_var(match):
        var_name = match.group(1)
        return os.getenv(var_name, match.group(0))

    for key, value in config_dict.items():
        if isinstance(value, str):
            resolved[key] = re.sub(r"\$\{([^}]+)\}", replace_env_var, value)
        elif isinstance(value, dict):
            resolved[key] = resolve_env_vars(value)
        elif isinstance(value, list):
            resolved[key] = [
                resolve_env_vars(item) if isinstance(item, dict)
                else re.sub(r"\$\{([^}]+)\}", replace_env_var, item) if isinstance(item, str)
                else item
                for item in value
            ]
        else:
            resolved[key] = value
    return resolved


def parse_list(value: Optional[str]) -> List[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(',') if item.strip()]


def _positive_number(value: Optional[str], fallback, cast=float):
    """Parse a positive number from an env value; anything else keeps ``fallback``."""
    if value is None or value == '':
        return fallback
    try:
        num = cast(value)
    except ValueError:
        return fallback
    return num if num > 0 else fallback


def apply_env_overrides(config: Dict[str, Any]) -> Dict[str, Any]:
    merged = dict(config)
    for env_name, key in (('DATA_DIR', 'data_dir'), ('STATE_FILE', 'state_file'),
                          ('STATE_BACKUP_DIR', 'state_backup_dir'), ('DOCKER_SOCKET', 'docker_socket')):
        if os.getenv(env_name):
            merged[key] = os.getenv(env_name)
    if os.getenv('COMPOSE_MOUNTS'):
        merged['compose_mounts'] = parse_list(os.getenv('COMPOSE_MOUNTS'))
    merged['local_refresh_hours'] = _positive_number(
        os.getenv('LOCAL_REFRESH_HOURS'), merged.get('local_refresh_hours', 6))
    merged['update_interval_minutes'] = _positive_number(
        os.getenv('UPDATE_INTERVAL_MINUTES'), merged.get('update_interval_minutes', 30))
    merged['update_batch_size'] = _positive_number(
        os.getenv('UPDATE_BATCH_SIZE'), merged.get('update_batch_size', 5), cast=int)
    merged['state_backups'] = _positive_number(
        os.getenv('STATE_BACKUPS'), merged.get('state_backups', 5), cast=int)
    if os.getenv('CHECK_POLICY') in (POLICY_SEQUENTIAL, POLICY_PARALLEL):
        merged['check_policy'] = os.getenv('CHECK_POLICY')
    return merged


def config_from_dict(config: Dict[str, Any]) -> ObserverConfig:
    known = {k: v for k, v in config.items() if k in ObserverConfig.__dataclass_fields__}
    result = ObserverConfig(**known)
    if not result.state_file:
        result.state_file = os.path.join(result.data_dir, 'db.json')
    return result


def load_config(config_file: str, logger) -> ObserverConfig:
    """Load, validate and resolve the JSON configuration file."""
    with open(config_file, 'r') as f:
        config = json.load(f)

    try:
        jsonschema_validate(config, CONFIG_SCHEMA)
    except ValidationError as e:
        logger.error(f"Configuration validation error: {e.message}")
        raise

    config = apply_env_overrides(resolve_env_vars(config))
    result = config_from_dict(config)
    logger.info(
        f"Loaded configuration: {len(result.compose_mounts)} compose roots, "
        f"batch size {result.update_batch_size}, policy {result.check_policy}"
    )
    return result


def create_default_config(config_file: str, logger) -> str:
    """Create a default config file. Returns the path written."""
    try:
        config_dir = os.path.dirname(config_file) or '.'
        os.makedirs(config_dir, exist_ok=True)
        with open(config_file, 'w') as f:
            json.dump(DEFAULT_CONFIG, f, indent=2)
        logger.info(f"Created default configuration file: {config_file}")
        logger.info("Set 'compose_mounts' to the directories holding your compose stacks")
        return config_file
    except OSError:
        local_path = './dockobserver_config.json'
        with open(local_path, 'w') as f:
            json.dump(DEFAULT_CONFIG, f, indent=2)
        logger.info(f"Created local configuration file: {local_path}")
        return local_path
