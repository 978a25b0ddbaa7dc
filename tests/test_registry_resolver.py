"""Unit tests for tag-to-digest resolution."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest
from conftest import DEBIAN_DIGEST, DEBIAN_TAG_DIGEST, GOLANG_DIGEST, fake_digest

from kubepin.keychain import KeychainException
from kubepin.models import ANONYMOUS, Credentials
from kubepin.registry_client import RegistryClientException
from kubepin.registry_resolver import RegistryResolver, ResolveError

# ---------------------------------------------------------------------------
# Successful resolution
# ---------------------------------------------------------------------------


class TestResolve:
    """Tests for ``RegistryResolver.resolve``."""

    def test_docker_hub_image(self, resolver: RegistryResolver) -> None:
        """Verify a Docker Hub short name resolves to its fully qualified digest form."""
        result = resolver.resolve(["golang:1.10"])

        assert result == {"golang:1.10": f"index.docker.io/library/golang@sha256:{GOLANG_DIGEST}"}

    def test_gcr_image(self, resolver: RegistryResolver, mock_registry_client: MagicMock) -> None:
        """Verify a gcr.io image keeps its registry and repository."""
        mock_registry_client.fetch_digest.side_effect = None
        mock_registry_client.fetch_digest.return_value = DEBIAN_TAG_DIGEST

        result = resolver.resolve(["gcr.io/google-appengine/debian9:2017-09-07-161610"])

        assert result == {
            "gcr.io/google-appengine/debian9:2017-09-07-161610": (
                f"gcr.io/google-appengine/debian9@sha256:{DEBIAN_TAG_DIGEST}"
            ),
        }

    def test_keys_are_original_strings(self, resolver: RegistryResolver) -> None:
        """Verify map keys are the input strings, not their normalized forms."""
        result = resolver.resolve(["busybox", "gcr.io/distroless/base", "gcr.io/distroless/base:debug"])

        assert set(result) == {"busybox", "gcr.io/distroless/base", "gcr.io/distroless/base:debug"}
        assert result["busybox"] == (
            "index.docker.io/library/busybox@sha256:" + fake_digest("index.docker.io/library/busybox:latest")
        )

    def test_duplicates_resolved_once(self, resolver: RegistryResolver, mock_registry_client: MagicMock) -> None:
        """Verify identical strings trigger a single registry lookup."""
        result = resolver.resolve(["nginx:1.25", "nginx:1.25", "nginx:1.25"])

        assert list(result) == ["nginx:1.25"]
        mock_registry_client.fetch_digest.assert_called_once()

    def test_empty_input(self, resolver: RegistryResolver, mock_registry_client: MagicMock) -> None:
        """Verify no lookups happen for an empty list."""
        assert resolver.resolve([]) == {}
        mock_registry_client.fetch_digest.assert_not_called()

    def test_credentials_from_keychain(
        self,
        resolver: RegistryResolver,
        mock_registry_client: MagicMock,
        mock_keychain: MagicMock,
    ) -> None:
        """Verify the keychain is asked for the reference's registry and its answer is passed on."""
        credentials = Credentials(username="robot", password="s3cret")
        mock_keychain.resolve.return_value = credentials

        resolver.resolve(["registry.example.com/team/app:v1"])

        mock_keychain.resolve.assert_called_once_with("registry.example.com")
        reference, passed_credentials = mock_registry_client.fetch_digest.call_args.args
        assert reference.repository == "team/app"
        assert passed_credentials is credentials

    def test_digest_form_passes_through(self, resolver: RegistryResolver, mock_registry_client: MagicMock) -> None:
        """Verify digest-form input is canonicalized without contacting the registry."""
        image = f"gcr.io/google-appengine/debian9@sha256:{DEBIAN_DIGEST}"

        assert resolver.resolve_one(image) == image
        mock_registry_client.fetch_digest.assert_not_called()


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------


class TestResolveFailures:
    """Tests for resolution failures."""

    def test_registry_error_raises_resolve_error(
        self, resolver: RegistryResolver, mock_registry_client: MagicMock,
    ) -> None:
        """Verify registry errors surface as ResolveError naming the image."""
        mock_registry_client.fetch_digest.side_effect = RegistryClientException("Manifest not found")

        with pytest.raises(ResolveError, match="golang:nope") as exc_info:
            resolver.resolve(["golang:nope"])

        assert exc_info.value.image == "golang:nope"
        assert "Manifest not found" in str(exc_info.value)

    def test_first_failure_in_input_order(self, resolver: RegistryResolver, mock_registry_client: MagicMock) -> None:
        """Verify the first failing reference in input order is reported."""

        def _fetch(reference, credentials=ANONYMOUS):
            if reference.tag in ("bad1", "bad2"):
                raise RegistryClientException(f"no tag {reference.tag}")
            return GOLANG_DIGEST

        mock_registry_client.fetch_digest.side_effect = _fetch

        with pytest.raises(ResolveError) as exc_info:
            resolver.resolve(["nginx:1.25", "nginx:bad1", "redis:7", "nginx:bad2"])

        assert exc_info.value.image == "nginx:bad1"

    def test_invalid_reference_raises(self, resolver: RegistryResolver) -> None:
        """Verify an unparseable reference raises ResolveError."""
        with pytest.raises(ResolveError, match="::not a ref::"):
            resolver.resolve(["::not a ref::"])

    def test_keychain_error_raises(self, resolver: RegistryResolver, mock_keychain: MagicMock) -> None:
        """Verify credential lookup failures raise ResolveError."""
        mock_keychain.resolve.side_effect = KeychainException("helper exploded")

        with pytest.raises(ResolveError, match="helper exploded"):
            resolver.resolve(["golang:1.10"])


# ---------------------------------------------------------------------------
# Fan-out bounds
# ---------------------------------------------------------------------------


class TestWorkerBounds:
    """Tests for the worker count clamp."""

    @pytest.mark.parametrize(
        ("requested", "expected"),
        [
            pytest.param(0, 1, id="zero"),
            pytest.param(4, 4, id="default"),
            pytest.param(64, 8, id="too-many"),
        ],
    )
    def test_max_workers_clamped(
        self, mock_registry_client: MagicMock, mock_keychain: MagicMock, requested: int, expected: int,
    ) -> None:
        """Verify the fan-out width stays between 1 and 8.

        Args:
            requested: Worker count passed to the resolver.
            expected: Effective worker count.
        """
        resolver = RegistryResolver(client=mock_registry_client, keychain=mock_keychain, max_workers=requested)

        assert resolver.max_workers == expected
