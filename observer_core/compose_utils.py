import os
import re
from typing import Dict, Iterable, List, Optional

from yaml import safe_load, YAMLError

from observer_core.models import ComposeService


COMPOSE_FILENAMES = frozenset({
    'docker-compose.yml',
    'docker-compose.yaml',
    'compose.yml',
    'compose.yaml',
})
DEFAULT_SCAN_DEPTH = 6

_ENV_PATTERN = re.compile(r"\$\{([^}:]+)(?::-([^}]*))?\}")


def _should_skip_dir(name: str) -> bool:
    return name == 'node_modules' or name.startswith('.')


def _scan_dir(root: str, results: List[str], depth: int, logger) -> None:
    if depth < 0:
        return
    try:
        entries = sorted(os.scandir(root), key=lambda e: e.name)
    except OSError as e:
        logger.warning(f"Skipping unreadable directory {root}: {e}")
        return
    for entry in entries:
        try:
            if entry.is_dir(follow_symlinks=False):
                if not _should_skip_dir(entry.name):
                    _scan_dir(entry.path, results, depth - 1, logger)
            elif entry.is_file() and entry.name in COMPOSE_FILENAMES:
                results.append(os.path.abspath(entry.path))
        except OSError as e:
            logger.warning(f"Skipping {entry.path}: {e}")


def find_compose_files(mounts: Iterable[str], logger, depth: int = DEFAULT_SCAN_DEPTH) -> List[str]:
    """Return absolute paths of compose manifests found under the given roots."""
    results: List[str] = []
    for mount in mounts:
        _scan_dir(mount, results, depth, logger)
    # Overlapping roots may report the same manifest twice
    seen = set()
    unique = []
    for path in results:
        if path not in seen:
            seen.add(path)
            unique.append(path)
    return unique


def load_env_file(directory: str) -> Dict[str, str]:
    """Read KEY=VALUE pairs from ``directory/.env``; a missing file yields {}."""
    env: Dict[str, str] = {}
    try:
        with open(os.path.join(directory, '.env'), 'r') as f:
            lines = f.read().splitlines()
    except OSError:
        return env
    for line in lines:
        line = line.strip()
        if not line or line.startswith('#') or '=' not in line:
            continue
        key, value = line.split('=', 1)
        env[key.strip()] = value.strip().strip('"').strip("'")
    return env


def interpolate(value: str, env: Dict[str, str]) -> str:
    """Expand ``${VAR}`` and ``${VAR:-default}`` from ``env``, then the process environment."""
    def replace(match):
        key, default = match.group(1), match.group(2)
        if key in env:
            return env[key]
        from_os = os.getenv(key)
        if from_os:
            return from_os
        return default or ''

    return _ENV_PATTERN.sub(replace, value)


def parse_compose_services(data, compose_file: str, env: Optional[Dict[str, str]] = None) -> List[ComposeService]:
    """Extract (service, image) pairs from an already-parsed manifest.

    Only ``services.<name>.image`` is read; services without a string image
    are skipped.
    """
    if not isinstance(data, dict):
        return []
    services = data.get('services') or {}
    if not isinstance(services, dict):
        return []
    stack = os.path.basename(os.path.dirname(os.path.abspath(compose_file)))
    result: List[ComposeService] = []
    for name, svc in services.items():
        image = svc.get('image') if isinstance(svc, dict) else None
        if not isinstance(image, str) or not image.strip():
            continue
        image = interpolate(image, env or {}).strip()
        if not image:
            continue
        result.append(ComposeService(stack=stack, compose_file=compose_file, service=str(name), image=image))
    return result


def load_compose_services(compose_file: str, logger) -> List[ComposeService]:
    """Load one manifest. Unreadable or malformed files are logged and yield []."""
    try:
        with open(compose_file, 'r') as f:
            data = safe_load(f)
    except (OSError, YAMLError) as e:
        logger.warning(f"Skipping compose file {compose_file}: {e}")
        return []
    env = load_env_file(os.path.dirname(compose_file))
    services = parse_compose_services(data, compose_file, env)
    logger.debug(f"Loaded {len(services)} services from {compose_file}")
    return services
