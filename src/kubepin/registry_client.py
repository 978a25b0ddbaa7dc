"""Docker/OCI registry client for Kubepin.

Resolves a tag to the digest of the manifest it currently points at, using the
registry HTTP API v2. Handles ``Basic`` and ``Bearer`` authorization
challenges, including the token-endpoint flow used by Docker Hub, GCR, GHCR
and most other public registries.
"""

from __future__ import annotations

import base64
import hashlib
import logging
import re
import threading

import requests
from requests.adapters import HTTPAdapter

from .models import (
    ANONYMOUS,
    DEFAULT_REGISTRY,
    DEFAULT_REQUEST_TIMEOUT_SECONDS,
    DEFAULT_RESOLVE_WORKERS,
    Credentials,
    ImageReference,
)

# Manifest media types accepted, most specific (multi-platform) first
MANIFEST_MEDIA_TYPES: tuple[str, ...] = (
    "application/vnd.oci.image.index.v1+json",
    "application/vnd.docker.distribution.manifest.list.v2+json",
    "application/vnd.oci.image.manifest.v1+json",
    "application/vnd.docker.distribution.manifest.v2+json",
)

DIGEST_HEADER: str = "Docker-Content-Digest"

# Docker Hub serves the v2 API from a different host than its canonical name
_DOCKER_HUB_API_HOST: str = "registry-1.docker.io"

_LOCAL_HOSTS: frozenset[str] = frozenset({"localhost", "127.0.0.1", "[::1]"})

_TOKEN_CLIENT_ID: str = "kubepin"

_CHALLENGE_PARAM_RE = re.compile(r'(\w+)="([^"]*)"')
_DIGEST_RE = re.compile(r"^sha256:([A-Fa-f0-9]{64})$")


class RegistryClientException(Exception):
    """Raised when the registry cannot be reached or refuses a request."""


def parse_challenge(header: str) -> tuple[str, dict[str, str]]:
    """Parse a ``WWW-Authenticate`` header into its scheme and parameters.

    Example::

        >>> parse_challenge('Bearer realm="https://auth.docker.io/token",service="registry.docker.io"')
        ('bearer', {'realm': 'https://auth.docker.io/token', 'service': 'registry.docker.io'})
    """
    scheme, _, params = header.strip().partition(" ")
    return scheme.lower(), dict(_CHALLENGE_PARAM_RE.findall(params))


def hex_from_digest(digest: str) -> str:
    """Return the lowercase hex of a ``sha256:<hex>`` digest string.

    Raises:
        RegistryClientException: If the digest is not a sha256 digest.
    """
    match = _DIGEST_RE.match(digest.strip())
    if not match:
        raise RegistryClientException(f"Unsupported manifest digest: {digest}")
    return match.group(1).lower()


class RegistryClient:
    """Thin wrapper around ``requests`` for the registry manifest endpoint.

    Each request is attempted once with ``timeout`` seconds allowed. Bearer
    tokens are cached per repository for the lifetime of the client.

    Args:
        session: Optional pre-configured ``requests.Session``.
        timeout: Per-request timeout in seconds.
        insecure_registries: Registry hosts to reach over plain HTTP.
        pool_size: Connection pool size; should match the resolver fan-out.
    """

    def __init__(
        self,
        session: requests.Session | None = None,
        timeout: float = DEFAULT_REQUEST_TIMEOUT_SECONDS,
        insecure_registries: frozenset[str] | set[str] | None = None,
        pool_size: int = DEFAULT_RESOLVE_WORKERS,
    ) -> None:
        self.logger = logging.getLogger(__name__)

        if session is None:
            session = requests.Session()
            adapter = HTTPAdapter(pool_connections=pool_size, pool_maxsize=pool_size, max_retries=0)
            session.mount("https://", adapter)
            session.mount("http://", adapter)

        self._session = session
        self.timeout = timeout
        self._insecure_registries = frozenset(host.lower() for host in insecure_registries or ())

        # Bearer tokens keyed by (registry, repository)
        self._tokens: dict[tuple[str, str], str] = {}
        self._token_lock = threading.Lock()

    # ------------------------------------------------------------------
    # URL construction
    # ------------------------------------------------------------------

    def _scheme(self, registry: str) -> str:
        host = registry.rsplit(":", 1)[0] if not registry.endswith("]") else registry
        if registry in self._insecure_registries or host in _LOCAL_HOSTS or host.endswith(".local"):
            return "http"
        return "https"

    def base_url(self, registry: str) -> str:
        """Return the API base URL for ``registry``, e.g. ``https://gcr.io``."""
        api_host = _DOCKER_HUB_API_HOST if registry == DEFAULT_REGISTRY else registry
        return f"{self._scheme(registry)}://{api_host}"

    def manifest_url(self, reference: ImageReference) -> str:
        return f"{self.base_url(reference.registry)}/v2/{reference.repository}/manifests/{reference.identifier}"

    # ------------------------------------------------------------------
    # Digest lookup
    # ------------------------------------------------------------------

    def fetch_digest(self, reference: ImageReference, credentials: Credentials = ANONYMOUS) -> str:
        """Return the lowercase hex digest of the manifest ``reference`` points at.

        Issues a ``HEAD`` and reads ``Docker-Content-Digest``. When the registry
        does not support ``HEAD`` or omits the header, the manifest is fetched
        with ``GET`` and hashed.

        Raises:
            RegistryClientException: On transport errors, authorization failures
                or non-2xx responses.
        """
        url = self.manifest_url(reference)
        self.logger.debug(f"Resolving {reference} via {url}")

        method = "HEAD"
        response = self._request(method, url, reference, credentials)
        if response.status_code == 405:
            method = "GET"
            response = self._request(method, url, reference, credentials)
        self._raise_for_status(reference, response)

        if digest := response.headers.get(DIGEST_HEADER):
            return hex_from_digest(digest)

        if method == "HEAD":
            response = self._request("GET", url, reference, credentials)
            self._raise_for_status(reference, response)
            if digest := response.headers.get(DIGEST_HEADER):
                return hex_from_digest(digest)

        return hashlib.sha256(response.content).hexdigest()

    @staticmethod
    def _raise_for_status(reference: ImageReference, response: requests.Response) -> None:
        if 200 <= response.status_code < 300:
            return
        if response.status_code == 404:
            raise RegistryClientException(f"Manifest for {reference} not found")
        if response.status_code in (401, 403):
            raise RegistryClientException(f"Access to {reference} denied (HTTP {response.status_code})")
        raise RegistryClientException(f"Registry returned HTTP {response.status_code} for {reference}")

    # ------------------------------------------------------------------
    # Requests and authorization
    # ------------------------------------------------------------------

    def _send(self, method: str, url: str, **kwargs) -> requests.Response:
        try:
            return self._session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.RequestException as e:
            raise RegistryClientException(f"{method} {url} failed: {e}") from e

    def _request(
        self,
        method: str,
        url: str,
        reference: ImageReference,
        credentials: Credentials,
    ) -> requests.Response:
        headers = {"Accept": ", ".join(MANIFEST_MEDIA_TYPES)}
        if authorization := self._initial_authorization(reference, credentials):
            headers["Authorization"] = authorization

        response = self._send(method, url, headers=headers)
        challenge = response.headers.get("WWW-Authenticate")
        if response.status_code != 401 or not challenge:
            return response

        authorization = self._authorize(reference, credentials, challenge)
        return self._send(method, url, headers={**headers, "Authorization": authorization})

    def _initial_authorization(self, reference: ImageReference, credentials: Credentials) -> str | None:
        if credentials.registry_token:
            return f"Bearer {credentials.registry_token}"
        with self._token_lock:
            token = self._tokens.get((reference.registry, reference.repository))
        return f"Bearer {token}" if token else None

    def _authorize(self, reference: ImageReference, credentials: Credentials, challenge: str) -> str:
        """Answer an authorization challenge and return the ``Authorization`` header value."""
        scheme, params = parse_challenge(challenge)

        if scheme == "basic":
            if not credentials.username:
                raise RegistryClientException(f"Registry {reference.registry} requires credentials")
            raw = f"{credentials.username}:{credentials.password or ''}".encode()
            return f"Basic {base64.b64encode(raw).decode('ascii')}"

        if scheme == "bearer":
            if "realm" not in params:
                raise RegistryClientException(f"Bearer challenge from {reference.registry} has no realm")
            token = self._fetch_token(reference, credentials, params)
            with self._token_lock:
                self._tokens[(reference.registry, reference.repository)] = token
            return f"Bearer {token}"

        raise RegistryClientException(f"Unsupported authorization scheme '{scheme}' from {reference.registry}")

    def _fetch_token(self, reference: ImageReference, credentials: Credentials, params: dict[str, str]) -> str:
        """Request a bearer token from the challenge's realm."""
        realm = params["realm"]
        scope = params.get("scope") or f"repository:{reference.repository}:pull"
        service = params.get("service")
        self.logger.debug(f"Requesting token from {realm} for scope {scope}")

        if credentials.identity_token:
            data = {
                "grant_type": "refresh_token",
                "refresh_token": credentials.identity_token,
                "client_id": _TOKEN_CLIENT_ID,
                "scope": scope,
            }
            if service:
                data["service"] = service
            response = self._send("POST", realm, data=data)
        else:
            query = {"scope": scope}
            if service:
                query["service"] = service
            auth = (credentials.username, credentials.password or "") if credentials.username else None
            response = self._send("GET", realm, params=query, auth=auth)

        if response.status_code != 200:
            raise RegistryClientException(
                f"Token request to {realm} for {reference} failed with HTTP {response.status_code}"
            )

        try:
            payload = response.json()
        except ValueError as e:
            raise RegistryClientException(f"Token endpoint {realm} returned invalid JSON") from e
        if not isinstance(payload, dict):
            raise RegistryClientException(
                f"Token endpoint {realm} returned {type(payload).__name__}, expected an object"
            )

        token = payload.get("token") or payload.get("access_token")
        if not token:
            raise RegistryClientException(f"Token endpoint {realm} returned no token")
        return token
