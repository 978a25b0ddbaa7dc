"""Shared pytest fixtures for Kubepin test suite."""

from __future__ import annotations

import hashlib
from unittest.mock import MagicMock

import pytest

from kubepin.keychain import DockerConfigKeychain
from kubepin.models import ANONYMOUS
from kubepin.registry_client import RegistryClient
from kubepin.registry_resolver import RegistryResolver

GOLANG_DIGEST = "e87d3a74df05105c219ab0d54034bf22a629b98b884efd5fe4211e198a0da43b"
DEBIAN_DIGEST = "547f82a1a5a194b22d1178f4c6aae3de006152757c0da267fd3a68b03e8b6d85"
DEBIAN_TAG_DIGEST = "a97266ab2bbfb8504b636d2b7aa6535323558fd3f859ce6773363757fa7142cb"

POD_MANIFEST = """\
apiVersion: v1
kind: Pod
metadata:
  name: test
spec:
  containers:
  - name: docker
    image: golang:1.10
"""

MIXED_MANIFEST = f"""\
apiVersion: v1
kind: Pod
metadata:
  name: test
spec:
  containers:
  - name: digest
    image: gcr.io/google-appengine/debian9@sha256:{DEBIAN_DIGEST}
    env:
    key: ENV
    value: ENV_VALUE
    moreImages:
        image: gcr.io/distroless/base:debug
  - name: no-tag
    image: gcr.io/distroless/base
  - name: docker
    image: busybox
"""


def fake_digest(image: str) -> str:
    """Deterministic 64-hex digest for an image string."""
    return hashlib.sha256(image.encode()).hexdigest()


@pytest.fixture()
def pod_manifest() -> str:
    """Return the single-container Pod manifest.

    Returns:
        YAML text whose only image is ``golang:1.10``.
    """
    return POD_MANIFEST


@pytest.fixture()
def mixed_manifest() -> str:
    """Return a Pod manifest mixing digest, tagged and untagged images.

    Returns:
        YAML text with one digest-form and three tag-form images, one nested
        under a non-container mapping.
    """
    return MIXED_MANIFEST


@pytest.fixture()
def mock_registry_client() -> MagicMock:
    """Return a ``RegistryClient`` mock answering with fixed digests.

    ``golang:1.10`` resolves to the published golang digest; every other
    reference resolves to a digest derived from its string form.
    """
    client = MagicMock(spec=RegistryClient)

    def _fetch_digest(reference, credentials=ANONYMOUS):
        if reference.repository == "library/golang" and reference.tag == "1.10":
            return GOLANG_DIGEST
        return fake_digest(str(reference))

    client.fetch_digest.side_effect = _fetch_digest
    return client


@pytest.fixture()
def mock_keychain() -> MagicMock:
    """Return a keychain mock that always answers anonymous."""
    keychain = MagicMock(spec=DockerConfigKeychain)
    keychain.resolve.return_value = ANONYMOUS
    return keychain


@pytest.fixture()
def resolver(mock_registry_client: MagicMock, mock_keychain: MagicMock) -> RegistryResolver:
    """Return a ``RegistryResolver`` wired to the mocked client and keychain."""
    return RegistryResolver(client=mock_registry_client, keychain=mock_keychain)
