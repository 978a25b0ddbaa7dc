"""Container image reference parser for Kubepin.

Parses image references under weak validation: the registry host and the tag
may be omitted and are filled in with Docker Hub defaults rather than rejected.
Handles Docker Hub host aliases, the implicit ``library/`` namespace and
``@sha256:`` digests.
"""

from __future__ import annotations

import re

from .models import DEFAULT_NAMESPACE, DEFAULT_REGISTRY, DEFAULT_TAG, ImageReference

# Docker Hub host aliases that should be normalized
_DOCKER_HUB_HOSTS: frozenset[str] = frozenset({
    "docker.io",
    "index.docker.io",
    "registry-1.docker.io",
})

_DIGEST_ALGORITHM: str = "sha256"

_MAX_REPOSITORY_LENGTH: int = 255

_TAG_RE = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_.-]{0,127}$")
_DIGEST_HEX_RE = re.compile(r"^[A-Fa-f0-9]{64}$")
_PATH_COMPONENT_RE = re.compile(r"^[A-Za-z0-9]+(?:(?:[._]|__|-+)[A-Za-z0-9]+)*$")
_HOST_RE = re.compile(
    r"^(?:\[[A-Fa-f0-9:]+\]|[A-Za-z0-9](?:[A-Za-z0-9-]*[A-Za-z0-9])?(?:\.[A-Za-z0-9](?:[A-Za-z0-9-]*[A-Za-z0-9])?)*)"
    r"(?::[0-9]+)?$"
)


class InvalidReferenceError(ValueError):
    """Raised when a string cannot be parsed as an image reference."""


def _has_registry_host(first_segment: str) -> bool:
    """Determine whether the first path segment is a registry host."""
    return "." in first_segment or ":" in first_segment or first_segment == "localhost"


def _normalize_docker_hub(registry: str | None, path_segments: list[str]) -> tuple[str, list[str]]:
    """Normalize Docker Hub registry references and implicit namespaces."""
    # Normalize Docker Hub host aliases
    if registry is None or registry in _DOCKER_HUB_HOSTS:
        registry = DEFAULT_REGISTRY

    # Docker Hub with single-segment path implies library/ namespace
    if registry == DEFAULT_REGISTRY and len(path_segments) == 1:
        path_segments = [DEFAULT_NAMESPACE, path_segments[0]]

    return registry, path_segments


def _split_digest(image: str) -> tuple[str, str | None]:
    """Split ``name@sha256:<hex>`` into the name and a normalized digest."""
    if "@" not in image:
        return image, None

    name, digest = image.split("@", 1)
    algorithm, _, hex_digest = digest.partition(":")
    if algorithm != _DIGEST_ALGORITHM or not _DIGEST_HEX_RE.match(hex_digest):
        raise InvalidReferenceError(f"Unsupported digest in image reference: {image}")
    return name, f"{_DIGEST_ALGORITHM}:{hex_digest.lower()}"


def _split_tag(name: str) -> tuple[str, str | None]:
    """Split the tag off the last path segment, if there is one."""
    colon = name.rfind(":")
    if colon == -1 or "/" in name[colon + 1:]:
        # The colon belongs to a registry port, not a tag
        return name, None
    return name[:colon], name[colon + 1:]


def parse_image_reference(image: str) -> ImageReference:
    """Parse a container image reference into normalized components.

    Args:
        image: Reference in ``[registry/]repository[:tag|@sha256:<hex>]`` form.

    Returns:
        The normalized ``ImageReference``. References with a digest are digest
        form (a tag given alongside the digest is dropped); references with
        neither get the ``latest`` tag.

    Raises:
        InvalidReferenceError: If ``image`` is not a valid reference.
    """
    if not isinstance(image, str) or not image:
        raise InvalidReferenceError("Image reference must not be empty")
    if image != image.strip() or any(c.isspace() for c in image):
        raise InvalidReferenceError(f"Image reference must not contain whitespace: {image!r}")

    # Step 1: Split off the digest
    working, digest = _split_digest(image)

    # Step 2: Extract tag from the last path segment
    working, tag = _split_tag(working)
    if tag is not None and not _TAG_RE.match(tag):
        raise InvalidReferenceError(f"Invalid tag in image reference: {image}")

    # Step 3: Determine registry host
    segments = working.split("/")
    registry: str | None = None
    path_segments: list[str]

    if len(segments) > 1 and _has_registry_host(segments[0]):
        if not _HOST_RE.match(segments[0]):
            raise InvalidReferenceError(f"Invalid registry host in image reference: {image}")
        registry = segments[0].lower()
        path_segments = segments[1:]
    else:
        path_segments = segments

    if not all(_PATH_COMPONENT_RE.match(segment) for segment in path_segments):
        raise InvalidReferenceError(f"Invalid repository in image reference: {image}")

    # Step 4: Docker Hub normalization
    registry, path_segments = _normalize_docker_hub(registry=registry, path_segments=path_segments)

    repository = "/".join(path_segments)
    if len(repository) > _MAX_REPOSITORY_LENGTH:
        raise InvalidReferenceError(f"Repository name is longer than {_MAX_REPOSITORY_LENGTH} characters: {image}")

    if digest is not None:
        return ImageReference(registry=registry, repository=repository, original=image, digest=digest)

    return ImageReference(registry=registry, repository=repository, original=image, tag=tag or DEFAULT_TAG)


def is_valid_reference(image: str) -> bool:
    """Return ``True`` when ``image`` parses as a reference under weak validation."""
    try:
        parse_image_reference(image)
    except InvalidReferenceError:
        return False
    return True


def is_digest_form(image: str) -> bool:
    """Return ``True`` when ``image`` parses and carries an explicit ``@sha256:`` digest."""
    try:
        return parse_image_reference(image).is_digest
    except InvalidReferenceError:
        return False
