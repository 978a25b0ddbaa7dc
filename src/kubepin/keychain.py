"""Registry credential discovery for Kubepin.

A keychain maps a registry host to ``Credentials``. The default keychain reads
the Docker client configuration (``$DOCKER_CONFIG/config.json`` or
``~/.docker/config.json``) including credential helpers; credentials can also
come from an image pull secret stored in the cluster.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
import os
import pathlib
import subprocess
import threading
from collections.abc import Callable
from typing import Any, Protocol

from .models import ANONYMOUS, DEFAULT_REGISTRY, Credentials

logger = logging.getLogger(__name__)

# Docker Hub credentials are stored under its legacy v1 index URL
DOCKER_HUB_SERVER: str = "https://index.docker.io/v1/"

_DOCKER_HUB_ALIASES: frozenset[str] = frozenset({
    "docker.io",
    "index.docker.io",
    "registry-1.docker.io",
})

# Username reported by credential helpers when the secret is an identity token
_TOKEN_USERNAME: str = "<token>"

_HELPER_NOT_FOUND: str = "credentials not found"


class KeychainException(Exception):
    """Raised when configured credentials exist but cannot be read."""


class AuthenticationProvider(Protocol):
    """Anything that can produce credentials for a registry host."""

    def resolve(self, registry: str) -> Credentials: ...


def normalize_server(server: str) -> str:
    """Reduce a config key such as ``https://gcr.io/v2/`` to a registry host."""
    host = server.strip()
    if "://" in host:
        host = host.split("://", 1)[1]
    host = host.split("/", 1)[0].lower()
    if host in _DOCKER_HUB_ALIASES:
        return DEFAULT_REGISTRY
    return host


def server_url(registry: str) -> str:
    """Return the server name a credential helper expects for ``registry``."""
    return DOCKER_HUB_SERVER if registry == DEFAULT_REGISTRY else registry


def credentials_from_auth_entry(entry: dict[str, Any]) -> Credentials:
    """Build ``Credentials`` from a Docker config ``auths`` entry.

    Args:
        entry: Mapping with any of ``auth`` (base64 ``user:password``),
            ``username``/``password``, ``identitytoken`` and ``registrytoken``.

    Returns:
        The decoded credentials, anonymous when the entry carries nothing usable.

    Raises:
        KeychainException: If ``auth`` is not valid base64 ``user:password``.
    """
    username = entry.get("username") or None
    password = entry.get("password") or None

    if encoded := entry.get("auth"):
        try:
            decoded = base64.b64decode(encoded).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError) as e:
            raise KeychainException(f"Invalid base64 'auth' value in Docker config: {e}") from e
        if ":" not in decoded:
            raise KeychainException("Invalid 'auth' value in Docker config: expected 'user:password'")
        username, password = decoded.split(":", 1)

    return Credentials(
        username=username,
        password=password,
        identity_token=entry.get("identitytoken") or None,
        registry_token=entry.get("registrytoken") or None,
    )


def _find_entry(entries: dict[str, Any], registry: str) -> Any | None:
    """Return the value whose normalized key matches ``registry``."""
    if registry in entries:
        return entries[registry]
    for key, value in entries.items():
        if normalize_server(key) == registry:
            return value
    return None


def run_credential_helper(helper: str, registry: str) -> Credentials:
    """Ask ``docker-credential-<helper>`` for the credentials of ``registry``.

    Raises:
        KeychainException: If the helper is missing, fails, or prints invalid JSON.
    """
    command = [f"docker-credential-{helper}", "get"]
    try:
        result = subprocess.run(  # noqa: S603
            command,
            input=server_url(registry),
            capture_output=True,
            text=True,
            check=False,
        )
    except OSError as e:
        raise KeychainException(f"Could not run credential helper {command[0]}: {e}") from e

    if result.returncode != 0:
        output = f"{result.stdout} {result.stderr}".strip()
        if _HELPER_NOT_FOUND in output.lower():
            return ANONYMOUS
        raise KeychainException(f"Credential helper {command[0]} failed for {registry}: {output}")

    try:
        payload = json.loads(result.stdout)
    except json.JSONDecodeError as e:
        raise KeychainException(f"Credential helper {command[0]} returned invalid JSON") from e

    username = payload.get("Username") or None
    secret = payload.get("Secret") or None
    if username == _TOKEN_USERNAME:
        return Credentials(identity_token=secret)
    return Credentials(username=username, password=secret)


class DockerConfigKeychain:
    """Keychain backed by the Docker client configuration file.

    Lookup order for a registry: ``credHelpers`` entry, then ``credsStore``,
    then the ``auths`` entry. A missing configuration file means anonymous
    access everywhere.

    Args:
        config_dir: Directory holding ``config.json``. Defaults to
            ``$DOCKER_CONFIG`` or ``~/.docker``.
        helper_runner: Callable used to run credential helpers.
    """

    def __init__(
        self,
        config_dir: str | os.PathLike[str] | None = None,
        helper_runner: Callable[[str, str], Credentials] = run_credential_helper,
    ) -> None:
        self.logger = logging.getLogger(__name__)
        if config_dir is None:
            config_dir = os.environ.get("DOCKER_CONFIG") or pathlib.Path.home() / ".docker"
        self.config_path = pathlib.Path(config_dir) / "config.json"
        self._helper_runner = helper_runner
        self._config: dict[str, Any] | None = None
        self._config_lock = threading.Lock()

    def _load_config(self) -> dict[str, Any]:
        with self._config_lock:
            if self._config is not None:
                return self._config

            try:
                raw = self.config_path.read_text(encoding="utf-8")
            except FileNotFoundError:
                self.logger.debug(f"No Docker config at {self.config_path}; using anonymous access")
                self._config = {}
                return self._config
            except OSError as e:
                raise KeychainException(f"Could not read Docker config {self.config_path}: {e}") from e

            try:
                config = json.loads(raw) if raw.strip() else {}
            except json.JSONDecodeError as e:
                raise KeychainException(f"Docker config {self.config_path} is not valid JSON") from e
            if not isinstance(config, dict):
                raise KeychainException(f"Docker config {self.config_path} must contain a JSON object")

            self._config = config
            return self._config

    def resolve(self, registry: str) -> Credentials:
        config = self._load_config()

        if helper := _find_entry(config.get("credHelpers") or {}, registry):
            self.logger.debug(f"Using credential helper '{helper}' for {registry}")
            return self._helper_runner(helper, registry)

        if store := config.get("credsStore"):
            credentials = self._helper_runner(store, registry)
            if not credentials.is_anonymous:
                return credentials

        if (entry := _find_entry(config.get("auths") or {}, registry)) is not None:
            return credentials_from_auth_entry(entry)

        return ANONYMOUS


class PullSecretKeychain:
    """Keychain backed by a ``kubernetes.io/dockerconfigjson`` secret.

    Args:
        docker_config: The decoded secret, shaped like ``~/.docker/config.json``.
    """

    def __init__(self, docker_config: dict[str, Any]) -> None:
        self._auths: dict[str, Any] = docker_config.get("auths") or {}

    def resolve(self, registry: str) -> Credentials:
        if (entry := _find_entry(self._auths, registry)) is not None:
            return credentials_from_auth_entry(entry)
        return ANONYMOUS


class MultiKeychain:
    """Consult several keychains in order; the first non-anonymous answer wins."""

    def __init__(self, *keychains: AuthenticationProvider) -> None:
        self.keychains = keychains

    def resolve(self, registry: str) -> Credentials:
        for keychain in self.keychains:
            credentials = keychain.resolve(registry)
            if not credentials.is_anonymous:
                return credentials
        return ANONYMOUS
