from typing import Optional

from observer_core.models import ImageReference


DEFAULT_REGISTRY = "docker.io"
# Hostnames that all refer to the default public registry
DEFAULT_REGISTRY_ALIASES = ("docker.io", "index.docker.io", "registry-1.docker.io")


def _split_digest(value: str):
    name, sep, digest = value.partition('@')
    if sep:
        return name, digest or None
    return value, None


def _split_tag(value: str):
    last_colon = value.rfind(':')
    last_slash = value.rfind('/')
    # A colon before the last slash belongs to a registry port, not a tag
    if last_colon > last_slash:
        return value[:last_colon], value[last_colon + 1:] or None
    return value, None


def parse_image_ref(raw: str) -> ImageReference:
    """Parse an image string into registry, repository, tag and digest.

    Never raises: fields that cannot be found are None, and the repository
    falls back to the trimmed input when nothing else is left. Blank input
    is the one case that yields an empty repository; compose parsing skips
    blank images before they get here.
    """
    trimmed = (raw or '').strip()
    name_with_tag, digest = _split_digest(trimmed)
    name, tag = _split_tag(name_with_tag)

    registry: Optional[str] = None
    repository = name
    first_slash = name.find('/')
    if first_slash > 0:
        first_part = name[:first_slash]
        if '.' in first_part or ':' in first_part:
            registry = first_part
            repository = name[first_slash + 1:]
    if not repository:
        repository = name or trimmed
    return ImageReference(raw=trimmed, registry=registry, repository=repository, tag=tag, digest=digest)


def normalize_repo_key(ref: ImageReference) -> str:
    """Lowercase ``registry/repository`` used to join compose, container and image data."""
    registry = ref.registry or DEFAULT_REGISTRY
    return f"{registry}/{ref.repository}".lower()


def format_image_ref(ref: ImageReference) -> str:
    """Serialize a reference back to ``[registry/]repository[:tag][@digest]``."""
    value = f"{ref.registry}/{ref.repository}" if ref.registry else ref.repository
    if ref.tag:
        value += f":{ref.tag}"
    if ref.digest:
        value += f"@{ref.digest}"
    return value


def is_default_registry(registry: Optional[str]) -> bool:
    return not registry or registry.lower() in DEFAULT_REGISTRY_ALIASES


def clean_digest(digest: Optional[str]) -> Optional[str]:
    """Strip the algorithm prefix (``sha256:``) from a digest."""
    if not digest:
        return None
    if ':' in digest:
        return digest.split(':', 1)[1] or None
    return digest


def format_digest_short(digest: Optional[str]) -> str:
    clean = clean_digest(digest)
    if not clean:
        return ''
    if len(clean) <= 12:
        return clean
    return f"{clean[:5]}...{clean[-5:]}"


def registry_url(ref: ImageReference) -> str:
    """Browsable URL for the image's home page."""
    if is_default_registry(ref.registry):
        repo_path = ref.repository if '/' in ref.repository else f"library/{ref.repository}"
        return f"https://hub.docker.com/r/{repo_path}"
    if ref.registry.lower() == 'ghcr.io':
        return f"https://github.com/{ref.repository}"
    return f"https://{ref.registry}/{ref.repository}"
