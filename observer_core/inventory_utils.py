from dataclasses import replace
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

from observer_core.docker_utils import guess_image_ref, resolve_image_digest
from observer_core.image_utils import (
    DEFAULT_REGISTRY,
    clean_digest,
    normalize_repo_key,
    parse_image_ref,
)
from observer_core.models import (
    ComposeService,
    ContainerSnapshot,
    ImageReference,
    InventoryRecord,
    RuntimeSnapshot,
    SOURCE_COMPOSE,
    SOURCE_SOCKET,
    STATUS_PAUSED,
    STATUS_RUNNING,
    STATUS_STOPPED,
    STATUS_UNKNOWN,
)


def match_container(compose_image: str, container: ContainerSnapshot, snapshot: RuntimeSnapshot) -> bool:
    """True when ``container`` runs the image declared by a compose service."""
    compose_ref = parse_image_ref(compose_image)
    container_ref = guess_image_ref(snapshot, container.image_id, container.image)
    repo_key = normalize_repo_key(compose_ref)

    if repo_key != normalize_repo_key(container_ref):
        return False

    if compose_ref.tag:
        # A declared tag with no resolvable container tag is ambiguous
        if not container_ref.tag or compose_ref.tag != container_ref.tag:
            return False

    if compose_ref.digest:
        container_digest = clean_digest(resolve_image_digest(snapshot, container.image_id, repo_key))
        compose_digest = clean_digest(compose_ref.digest)
        if not container_digest or not compose_digest:
            return False
        # Suffix containment can false-positive on very short digests
        if not container_digest.endswith(compose_digest) and not compose_digest.endswith(container_digest):
            return False

    return True


def status_from_containers(containers: List[ContainerSnapshot]) -> str:
    if any(c.state == STATUS_RUNNING for c in containers):
        return STATUS_RUNNING
    if any(c.state == STATUS_PAUSED for c in containers):
        return STATUS_PAUSED
    if containers:
        return STATUS_STOPPED
    return STATUS_UNKNOWN


def make_id(repo_key: str, tag: Optional[str], digest: Optional[str],
            stack: Optional[str], service: Optional[str]) -> str:
    return '|'.join([repo_key, tag or '', digest or '', stack or '', service or ''])


def display_name(ref: ImageReference) -> str:
    return f"{ref.registry}/{ref.repository}" if ref.registry else ref.repository


def _record(ref: ImageReference, digest: Optional[str], source: str, status: str, now: datetime,
            service: Optional[ComposeService] = None) -> InventoryRecord:
    stack = service.stack if service else None
    service_name = service.service if service else None
    return InventoryRecord(
        id=make_id(normalize_repo_key(ref), ref.tag, digest, stack, service_name),
        repo=ref.repository,
        registry=ref.registry or DEFAULT_REGISTRY,
        tag=ref.tag,
        digest=digest,
        display_name=display_name(ref),
        source=source,
        stack=stack,
        compose_file=service.compose_file if service else None,
        service=service_name,
        status=status,
        last_seen=now,
    )


def build_inventory(snapshot: RuntimeSnapshot, compose_services: List[ComposeService],
                    now: Optional[datetime] = None) -> List[InventoryRecord]:
    """Reconcile the runtime snapshot against declared compose services.

    Produces one record per compose service, then one record per group of
    containers that no service claimed, grouped by resolved image identity.
    Update-check fields are left empty; see ``carry_forward``.
    """
    now = now or datetime.now(timezone.utc)
    used: set = set()
    inventory: List[InventoryRecord] = []

    for service in compose_services:
        compose_ref = parse_image_ref(service.image)
        matches = [c for c in snapshot.containers if match_container(service.image, c, snapshot)]
        used.update(c.id for c in matches)
        if matches:
            digest = resolve_image_digest(snapshot, matches[0].image_id, normalize_repo_key(compose_ref))
        else:
            digest = compose_ref.digest
        inventory.append(
            _record(compose_ref, digest, SOURCE_COMPOSE, status_from_containers(matches), now, service)
        )

    groups: Dict[Tuple[str, str, str], List[ContainerSnapshot]] = {}
    for container in snapshot.containers:
        if container.id in used:
            continue
        ref = guess_image_ref(snapshot, container.image_id, container.image)
        repo_key = normalize_repo_key(ref)
        digest = resolve_image_digest(snapshot, container.image_id, repo_key)
        groups.setdefault((repo_key, ref.tag or '', digest or ''), []).append(container)

    for containers in groups.values():
        sample = containers[0]
        ref = guess_image_ref(snapshot, sample.image_id, sample.image)
        digest = resolve_image_digest(snapshot, sample.image_id, normalize_repo_key(ref))
        inventory.append(_record(ref, digest, SOURCE_SOCKET, status_from_containers(containers), now))

    return inventory


def carry_forward(inventory: List[InventoryRecord], previous: List[InventoryRecord]) -> List[InventoryRecord]:
    """Copy prior update-check results onto rebuilt records that kept their id."""
    previous_by_id = {r.id: r for r in previous}
    merged = []
    for record in inventory:
        old = previous_by_id.get(record.id)
        if old is None:
            merged.append(record)
            continue
        merged.append(replace(
            record,
            last_update_check=old.last_update_check,
            update_available=old.update_available,
            update_message=old.update_message,
        ))
    return merged
