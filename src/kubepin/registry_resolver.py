"""Tag-to-digest resolution for Kubepin.

Turns the tag-form image references collected from one manifest into a
``DigestMap`` by asking each image's registry which manifest the tag currently
points at. References are deduplicated first and then resolved with a small,
bounded thread pool.
"""

from __future__ import annotations

import concurrent.futures
import logging
from collections.abc import Iterable

from .image_parser import InvalidReferenceError, parse_image_reference
from .keychain import AuthenticationProvider, KeychainException
from .models import DEFAULT_RESOLVE_WORKERS, MAX_RESOLVE_WORKERS, DigestMap
from .registry_client import RegistryClient, RegistryClientException


class ResolveError(Exception):
    """Raised when an image reference cannot be resolved to a digest.

    Attributes:
        image: The reference string exactly as it appeared in the manifest.
    """

    def __init__(self, image: str, reason: str) -> None:
        super().__init__(f"Failed to resolve image '{image}': {reason}")
        self.image = image
        self.reason = reason


class RegistryResolver:
    """Resolve tag-form image references to ``name@sha256:<hex>`` references.

    Args:
        client: Registry client used to look up manifest digests.
        keychain: Authentication provider consulted once per reference.
        max_workers: Number of simultaneous registry requests, between 1 and 8.
    """

    def __init__(
        self,
        client: RegistryClient,
        keychain: AuthenticationProvider,
        max_workers: int = DEFAULT_RESOLVE_WORKERS,
    ) -> None:
        self.logger = logging.getLogger(__name__)
        self.client = client
        self.keychain = keychain
        self.max_workers = max(1, min(max_workers, MAX_RESOLVE_WORKERS))

    def resolve_one(self, image: str) -> str:
        """Resolve a single reference string to its digest form.

        Digest-form input is returned in canonical form without contacting the
        registry.

        Raises:
            ResolveError: If the reference is invalid, credentials cannot be
                obtained, or the registry lookup fails.
        """
        try:
            reference = parse_image_reference(image)
        except InvalidReferenceError as e:
            raise ResolveError(image, str(e)) from e

        if reference.is_digest:
            return str(reference)

        try:
            credentials = self.keychain.resolve(reference.registry)
            hex_digest = self.client.fetch_digest(reference, credentials)
        except (KeychainException, RegistryClientException) as e:
            raise ResolveError(image, str(e)) from e

        resolved = reference.with_digest(hex_digest)
        self.logger.info(f"Resolved {image} -> {resolved}")
        return resolved

    def resolve(self, images: Iterable[str]) -> DigestMap:
        """Resolve every reference in ``images``.

        Identical strings are resolved once. The first failure, in input
        order, aborts the whole batch.

        Args:
            images: Tag-form references as collected from a manifest.

        Returns:
            Mapping from each input string to its resolved digest reference.

        Raises:
            ResolveError: Naming the first reference that failed.
        """
        unique_images = list(dict.fromkeys(images))
        if not unique_images:
            return {}

        self.logger.info(f"Resolving {len(unique_images)} image(s) with up to {self.max_workers} worker(s)")
        digest_map: DigestMap = {}

        with concurrent.futures.ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            futures = [(image, executor.submit(self.resolve_one, image)) for image in unique_images]
            try:
                for image, future in futures:
                    digest_map[image] = future.result()
            except ResolveError:
                for _, pending in futures:
                    pending.cancel()
                raise

        return digest_map
