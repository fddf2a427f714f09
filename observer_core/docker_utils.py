from typing import List, Optional, Any

import docker
import requests
from docker.errors import DockerException

from observer_core.image_utils import parse_image_ref, normalize_repo_key
from observer_core.models import (
    ContainerSnapshot,
    ImageReference,
    ImageSnapshot,
    RuntimeSnapshot,
    STATUS_PAUSED,
    STATUS_RUNNING,
    STATUS_STOPPED,
    STATUS_UNKNOWN,
)


class RuntimeQueryError(RuntimeError):
    """The container runtime could not be queried; the snapshot is unusable."""


def create_docker_client(socket_path: Optional[str] = None, timeout: Optional[int] = None):
    """Connect to the runtime on ``socket_path`` or the environment default (DOCKER_HOST)."""
    kwargs = {}
    if timeout:
        kwargs['timeout'] = timeout
    try:
        if socket_path:
            base_url = socket_path if '://' in socket_path else f"unix://{socket_path}"
            return docker.DockerClient(base_url=base_url, **kwargs)
        return docker.from_env(**kwargs)
    except DockerException as e:
        raise RuntimeQueryError(f"Failed to connect to container runtime: {e}") from e


def map_state(state: Optional[str]) -> str:
    if not state:
        return STATUS_UNKNOWN
    lower = state.lower()
    if lower == 'running':
        return STATUS_RUNNING
    if lower == 'paused':
        return STATUS_PAUSED
    return STATUS_STOPPED


def _container_from_raw(item: dict) -> ContainerSnapshot:
    names = item.get('Names') or []
    name = names[0] if names else ''
    return ContainerSnapshot(
        id=item.get('Id', ''),
        name=name.lstrip('/'),
        image=item.get('Image') or '',
        image_id=item.get('ImageID') or '',
        state=map_state(item.get('State')),
    )


def _image_from_raw(item: dict) -> ImageSnapshot:
    return ImageSnapshot(
        id=item.get('Id', ''),
        repo_tags=[t for t in (item.get('RepoTags') or []) if t and t != '<none>:<none>'],
        repo_digests=[d for d in (item.get('RepoDigests') or []) if d and d != '<none>@<none>'],
    )


def load_docker_snapshot(docker_client, logger) -> RuntimeSnapshot:
    """List every container (stopped included) and every image in one pass.

    Any failure aborts the snapshot: a partial view of the runtime is never returned.
    """
    try:
        containers_raw: List[Any] = docker_client.api.containers(all=True)
        images_raw: List[Any] = docker_client.api.images()
    except (DockerException, requests.exceptions.RequestException) as e:
        raise RuntimeQueryError(f"Failed to query container runtime: {e}") from e
    snapshot = RuntimeSnapshot(
        containers=[_container_from_raw(c) for c in containers_raw],
        images=[_image_from_raw(i) for i in images_raw],
    )
    logger.debug(f"Runtime snapshot: {len(snapshot.containers)} containers, {len(snapshot.images)} images")
    return snapshot


def resolve_image_digest(snapshot: RuntimeSnapshot, image_id: str, repo_key: Optional[str] = None) -> Optional[str]:
    """Return the bare ``algo:hex`` registry digest of a local image, or None.

    When ``repo_key`` is given, a RepoDigest for that repository is preferred
    over the first one listed.
    """
    image = snapshot.find_image(image_id)
    if image is None or not image.repo_digests:
        return None
    chosen = image.repo_digests[0]
    if repo_key:
        for entry in image.repo_digests:
            name = entry.split('@', 1)[0]
            if normalize_repo_key(parse_image_ref(name)) == repo_key:
                chosen = entry
                break
    if '@' in chosen:
        return chosen.split('@', 1)[1] or None
    return chosen


def guess_image_ref(snapshot: RuntimeSnapshot, image_id: str, image_name: str) -> ImageReference:
    """Best reference for a container's image.

    Prefers the image's repo tag that names the container's own image string,
    then the image's first repo tag, then the container's image string as is.
    """
    image = snapshot.find_image(image_id)
    if image is None or not image.repo_tags:
        return parse_image_ref(image_name)
    declared = parse_image_ref(image_name)
    declared_key = normalize_repo_key(declared)
    for repo_tag in image.repo_tags:
        ref = parse_image_ref(repo_tag)
        if normalize_repo_key(ref) == declared_key and ref.tag == (declared.tag or 'latest'):
            return ref
    return parse_image_ref(image.repo_tags[0])
