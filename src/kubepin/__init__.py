"""Kubepin: pin Kubernetes manifest images to content digests.

Rewrite the ``image:`` fields of Kubernetes manifests so that every tagged
image reference becomes an immutable ``name@sha256:<digest>`` reference.
"""

import logging

from kubepin._version import __version__
from kubepin.models import Document, ImageReference

__all__ = ["Document", "ImageReference", "__version__"]

logging.getLogger(__name__).addHandler(logging.NullHandler())
