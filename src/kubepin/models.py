"""Data models for Kubepin manifest documents, image references and registry credentials."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TypeAlias

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------
DEFAULT_REGISTRY: str = "index.docker.io"  # Registry assumed when a reference names none.

DEFAULT_NAMESPACE: str = "library"  # Docker Hub namespace for single-component repositories.

DEFAULT_TAG: str = "latest"  # Tag assumed when a reference carries neither tag nor digest.

DEFAULT_RESOLVE_WORKERS: int = 4  # Simultaneous registry requests per file.

MAX_RESOLVE_WORKERS: int = 8  # Upper bound for --workers.

DEFAULT_REQUEST_TIMEOUT_SECONDS: int = 30  # Per-request registry timeout; each request is attempted once.

IMAGE_KEY: str = "image"  # The only mapping key whose value is treated as an image reference.

STR_TAG: str = "tag:yaml.org,2002:str"

DigestMap: TypeAlias = dict[str, str]


# ---------------------------------------------------------------------------
# Document model
# ---------------------------------------------------------------------------


@dataclass(eq=False)
class ScalarNode:
    """A YAML scalar.

    ``value`` holds the scalar text exactly as parsed and ``tag`` the resolved
    YAML tag, so ``"1.10"`` (a string) and ``1.10`` (a float) stay distinct
    through a parse/serialize cycle.
    """

    value: str
    tag: str = STR_TAG
    style: str | None = None

    @property
    def is_string(self) -> bool:
        return self.tag == STR_TAG


@dataclass(eq=False)
class SequenceNode:
    """An ordered list of nodes."""

    items: list[Node] = field(default_factory=list)
    tag: str = "tag:yaml.org,2002:seq"


@dataclass(eq=False)
class MappingNode:
    """An ordered list of key/value pairs.

    Insertion order is significant and duplicate keys are kept as they appear.
    """

    pairs: list[tuple[Node, Node]] = field(default_factory=list)
    tag: str = "tag:yaml.org,2002:map"


Node: TypeAlias = MappingNode | SequenceNode | ScalarNode


@dataclass
class Document:
    """A parsed manifest. ``root`` is ``None`` for an empty document."""

    root: Node | None = None

    @property
    def is_empty(self) -> bool:
        return self.root is None


# ---------------------------------------------------------------------------
# Image references
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ImageReference:
    """Parsed container image reference.

    Represents the normalized components extracted from an image string by the
    image parser. Exactly one of ``tag`` and ``digest`` is set.
    """

    registry: str
    repository: str
    original: str
    tag: str | None = None
    digest: str | None = None

    @property
    def is_digest(self) -> bool:
        return self.digest is not None

    @property
    def name(self) -> str:
        """Fully qualified repository name, e.g. ``index.docker.io/library/golang``."""
        return f"{self.registry}/{self.repository}"

    @property
    def identifier(self) -> str:
        """The tag or digest used to address the manifest endpoint."""
        return self.digest if self.digest is not None else self.tag

    def with_digest(self, hex_digest: str) -> str:
        """Return the canonical ``<registry>/<repository>@sha256:<hex>`` string."""
        return f"{self.name}@sha256:{hex_digest.lower()}"

    def __str__(self) -> str:
        if self.digest is not None:
            return f"{self.name}@{self.digest}"
        return f"{self.name}:{self.tag}"


# ---------------------------------------------------------------------------
# Registry credentials
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Credentials:
    """Registry credentials as returned by a keychain.

    ``identity_token`` is an OAuth2 refresh token exchanged at the registry's
    token endpoint; ``registry_token`` is a bearer token sent as-is.
    """

    username: str | None = None
    password: str | None = None
    identity_token: str | None = None
    registry_token: str | None = None

    @property
    def is_anonymous(self) -> bool:
        return not (self.username or self.password or self.identity_token or self.registry_token)

    def __repr__(self) -> str:
        if self.is_anonymous:
            return "Credentials(anonymous)"
        return f"Credentials(username={self.username!r}, secret=<redacted>)"


ANONYMOUS = Credentials()
