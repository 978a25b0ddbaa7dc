"""YAML manifest parsing and serialization for Kubepin.

Manifests are composed into PyYAML's node graph rather than constructed into
Python objects, so every scalar keeps its original text and resolved tag. The
node graph is converted into the Kubepin document model and back.
"""

from __future__ import annotations

import logging

import yaml

from .models import Document, MappingNode, Node, ScalarNode, SequenceNode

logger = logging.getLogger(__name__)

_NULL_TAG: str = "tag:yaml.org,2002:null"

_INDENT: int = 2

# Wide enough that long scalars are never folded across lines
_LINE_WIDTH: int = 4096

# Block scalar styles survive a round trip; quoting is recomputed on output
_PRESERVED_STYLES: frozenset[str] = frozenset({"|", ">"})


class ParseError(Exception):
    """Raised when input is not a valid manifest document."""


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


def _compose_first_document(data: bytes | str) -> yaml.Node | None:
    """Compose the first document of a YAML stream, ignoring any that follow."""
    loader = yaml.SafeLoader(data)
    try:
        if not loader.check_node():
            return None
        node = loader.get_node()
        if loader.check_node():
            logger.warning("Manifest contains more than one document; only the first is resolved")
        return node
    finally:
        loader.dispose()


def _from_yaml_node(node: yaml.Node, memo: dict[int, Node]) -> Node:
    """Convert a PyYAML node into the document model, keeping aliased nodes shared."""
    if id(node) in memo:
        return memo[id(node)]

    if isinstance(node, yaml.ScalarNode):
        scalar = ScalarNode(value=node.value, tag=node.tag, style=node.style)
        memo[id(node)] = scalar
        return scalar

    if isinstance(node, yaml.SequenceNode):
        sequence = SequenceNode(tag=node.tag)
        memo[id(node)] = sequence
        sequence.items = [_from_yaml_node(item, memo) for item in node.value]
        return sequence

    if isinstance(node, yaml.MappingNode):
        mapping = MappingNode(tag=node.tag)
        memo[id(node)] = mapping
        mapping.pairs = [(_from_yaml_node(k, memo), _from_yaml_node(v, memo)) for k, v in node.value]
        return mapping

    raise ParseError(f"Unsupported YAML node: {node!r}")


def parse_manifest(data: bytes | str) -> Document:
    """Parse a manifest into a ``Document``.

    Args:
        data: Raw manifest bytes or text.

    Returns:
        The parsed document. Input without any content (or an explicit empty
        document) yields an empty ``Document``.

    Raises:
        ParseError: If the input is not valid YAML or its root is not a mapping.
    """
    try:
        yaml_root = _compose_first_document(data)
    except yaml.YAMLError as e:
        raise ParseError(f"Manifest is not valid YAML: {e}") from e

    if yaml_root is None:
        return Document()
    if isinstance(yaml_root, yaml.ScalarNode) and yaml_root.tag == _NULL_TAG:
        return Document()
    if not isinstance(yaml_root, yaml.MappingNode):
        raise ParseError(f"Manifest root must be a mapping, found {yaml_root.id}")

    return Document(root=_from_yaml_node(yaml_root, memo={}))


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------


def _to_yaml_node(node: Node, memo: dict[int, yaml.Node]) -> yaml.Node:
    """Convert a document model node back into a PyYAML node in block style."""
    if id(node) in memo:
        return memo[id(node)]

    if isinstance(node, ScalarNode):
        style = node.style if node.style in _PRESERVED_STYLES else None
        yaml_scalar = yaml.ScalarNode(tag=node.tag, value=node.value, style=style)
        memo[id(node)] = yaml_scalar
        return yaml_scalar

    if isinstance(node, SequenceNode):
        yaml_sequence = yaml.SequenceNode(tag=node.tag, value=[], flow_style=False)
        memo[id(node)] = yaml_sequence
        yaml_sequence.value.extend(_to_yaml_node(item, memo) for item in node.items)
        return yaml_sequence

    if isinstance(node, MappingNode):
        yaml_mapping = yaml.MappingNode(tag=node.tag, value=[], flow_style=False)
        memo[id(node)] = yaml_mapping
        yaml_mapping.value.extend((_to_yaml_node(k, memo), _to_yaml_node(v, memo)) for k, v in node.pairs)
        return yaml_mapping

    raise TypeError(f"Unsupported document node: {node!r}")


def serialize_manifest(document: Document) -> str:
    """Serialize a ``Document`` to YAML text.

    Keys are emitted in parsed order with two-space indentation and block
    style; scalars are quoted only where plain text would resolve to a
    different type. An empty document serializes to an empty string.
    """
    if document.root is None:
        return ""

    return yaml.serialize(
        _to_yaml_node(document.root, memo={}),
        Dumper=yaml.SafeDumper,
        indent=_INDENT,
        width=_LINE_WIDTH,
        allow_unicode=True,
    )
