from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Optional, List


SOURCE_COMPOSE = "compose"
SOURCE_SOCKET = "socket"

STATUS_RUNNING = "running"
STATUS_STOPPED = "stopped"
STATUS_PAUSED = "paused"
STATUS_UNKNOWN = "unknown"


@dataclass(frozen=True)
class ImageReference:
    """Structured form of an image reference string."""
    raw: str = field(compare=False)
    registry: Optional[str]  # None means the default public registry
    repository: str
    tag: Optional[str] = None
    digest: Optional[str] = None  # e.g. "sha256:abcd..."


@dataclass
class ContainerSnapshot:
    id: str
    name: str
    image: str  # image string the container was created from
    image_id: str
    state: str = STATUS_UNKNOWN


@dataclass
class ImageSnapshot:
    id: str
    repo_tags: List[str] = field(default_factory=list)
    repo_digests: List[str] = field(default_factory=list)


@dataclass
class RuntimeSnapshot:
    """Containers and images read from the runtime in one pass."""
    containers: List[ContainerSnapshot] = field(default_factory=list)
    images: List[ImageSnapshot] = field(default_factory=list)

    def find_image(self, image_id: str) -> Optional[ImageSnapshot]:
        for image in self.images:
            if image.id == image_id:
                return image
        return None


@dataclass
class ComposeService:
    stack: str
    compose_file: str
    service: str
    image: str


@dataclass
class InventoryRecord:
    """One logical deployed image: a compose service or a group of undeclared containers."""
    id: str
    repo: str
    registry: str
    tag: Optional[str]
    digest: Optional[str]
    display_name: str
    source: str  # compose, socket
    stack: Optional[str] = None
    compose_file: Optional[str] = None
    service: Optional[str] = None
    status: str = STATUS_UNKNOWN
    last_seen: Optional[datetime] = None
    last_update_check: Optional[datetime] = None
    update_available: Optional[bool] = None  # None: not determined or check failed
    update_message: Optional[str] = None


@dataclass
class RegistryCheckResult:
    remote_digest: Optional[str] = None
    error: Optional[str] = None


@dataclass
class InventoryState:
    records: List[InventoryRecord] = field(default_factory=list)
    last_refresh: Optional[datetime] = None


@dataclass
class ObserverConfig:
    """Runtime settings for the observer."""
    data_dir: str = "/data"
    state_file: Optional[str] = None  # defaults to <data_dir>/db.json
    state_backup_dir: Optional[str] = None
    state_backups: int = 5
    docker_socket: Optional[str] = None  # None: DOCKER_HOST / platform default
    compose_mounts: List[str] = field(default_factory=list)
    scan_depth: int = 6
    local_refresh_hours: float = 6
    update_interval_minutes: float = 30
    update_batch_size: int = 5
    check_policy: str = "sequential"  # sequential, parallel
    max_workers: int = 4
    max_per_host: int = 2
    request_timeout: int = 10
    rate_limit_cooldown_sec: int = 3600
    registries: Dict[str, Dict] = field(default_factory=dict)
