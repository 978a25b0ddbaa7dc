"""Document traversal for Kubepin.

Two depth-first walks over the document model: one collects tag-form image
references from ``image:`` values, the other substitutes resolved digest
references back into them. Both visit sequences left to right and mappings in
insertion order, and only ever treat a value as an image when its immediate
mapping key is exactly ``image``.
"""

from __future__ import annotations

import logging

from .image_parser import InvalidReferenceError, parse_image_reference
from .models import IMAGE_KEY, DigestMap, MappingNode, Node, ScalarNode, SequenceNode

logger = logging.getLogger(__name__)


def _string_scalar(value: Node) -> ScalarNode | None:
    """Return ``value`` if it is a string scalar, else ``None``."""
    if isinstance(value, ScalarNode) and value.is_string:
        return value
    return None


def _is_image_key(key: Node) -> bool:
    return isinstance(key, ScalarNode) and key.is_string and key.value == IMAGE_KEY


def collect_tagged_images(node: Node | None) -> list[str]:
    """Collect every tag-form image reference under ``node``.

    Digest-form references are skipped. Values that do not parse as a
    reference are logged as a warning and skipped. Duplicates are kept, in
    traversal order.

    Args:
        node: Root of the (sub)tree to walk.

    Returns:
        Image strings exactly as they appear in the document.
    """
    images: list[str] = []
    _collect(node, images)
    return images


def _collect(node: Node | None, images: list[str]) -> None:
    if isinstance(node, SequenceNode):
        for item in node.items:
            _collect(item, images)
    elif isinstance(node, MappingNode):
        for key, value in node.pairs:
            image_node = _string_scalar(value) if _is_image_key(key) else None
            if image_node is None:
                _collect(value, images)
                continue

            try:
                reference = parse_image_reference(image_node.value)
            except InvalidReferenceError:
                logger.warning(f"Couldn't parse image: {image_node.value}")
                continue

            if not reference.is_digest:
                images.append(image_node.value)


def rewrite_images(node: Node | None, digest_map: DigestMap) -> Node | None:
    """Replace every ``image:`` value found in ``digest_map`` with its resolved reference.

    The tree is mutated in place; values that are not keys of ``digest_map``
    (digest-form and unparseable references) are left untouched.

    Args:
        node: Root of the (sub)tree to rewrite.
        digest_map: Original image string to ``name@sha256:<hex>`` mapping.

    Returns:
        ``node``, for chaining.
    """
    if not digest_map:
        return node

    if isinstance(node, SequenceNode):
        for item in node.items:
            rewrite_images(item, digest_map)
    elif isinstance(node, MappingNode):
        for index, (key, value) in enumerate(node.pairs):
            image_node = _string_scalar(value) if _is_image_key(key) else None
            if image_node is None:
                rewrite_images(value, digest_map)
            elif image_node.value in digest_map:
                node.pairs[index] = (key, ScalarNode(value=digest_map[image_node.value]))

    return node
