"""Kubernetes API controller for Kubepin.

Provides access to image pull secrets stored in the cluster so that private
registries can be resolved with the same credentials the cluster uses.
Supports both in-cluster and local kubeconfig authentication.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
import threading
from typing import Any

import kubernetes
import kubernetes.client
import kubernetes.config

# Secret types carrying Docker registry credentials and the data key of each
_PULL_SECRET_KEYS: dict[str, str] = {
    "kubernetes.io/dockerconfigjson": ".dockerconfigjson",
    "kubernetes.io/dockercfg": ".dockercfg",
}


class KubernetesControllerException(Exception):
    """Base exception for KubernetesController errors."""


class KubernetesController:
    """Thin wrapper around the Kubernetes Python client.

    Handles configuration loading (in-cluster or kubeconfig) and reads image
    pull secrets.

    Args:
        context: Kubeconfig context name to use for the cluster connection.
            When omitted, in-cluster configuration is tried first, then the
            current kubeconfig context.
        insecure: When ``True``, disable SSL certificate verification.
    """

    def __init__(self, context: str | None = None, insecure: bool = False) -> None:
        self.logger = logging.getLogger(__name__)

        # Reduce noise from kubernetes client REST logging (only set once)
        k8s_rest_logger = logging.getLogger("kubernetes.client.rest")
        if not k8s_rest_logger.level or k8s_rest_logger.level == logging.NOTSET:
            k8s_rest_logger.setLevel(logging.INFO)

        self._context = context
        self._insecure = insecure

        self._api_client: kubernetes.client.ApiClient | None = None
        self._core_v1: kubernetes.client.CoreV1Api | None = None

        # Lock for thread-safe initialization of the client
        self._client_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Client initialisation
    # ------------------------------------------------------------------

    def _initialize_client(self) -> None:
        """Initialise the Kubernetes client on first use.

        Resolution logic:
            - If ``context`` is provided → load kubeconfig with that context.
            - Otherwise → try in-cluster config first, then fall back to the
              default kubeconfig context.
        """
        with self._client_lock:
            if self._api_client:
                return

            try:
                if self._context:
                    kubernetes.config.load_kube_config(context=self._context)
                    self.logger.info(f"Successfully loaded kubeconfig for context: {self._context}")
                else:
                    try:
                        kubernetes.config.load_incluster_config()
                        self.logger.info("Successfully loaded in-cluster configuration.")
                    except kubernetes.config.ConfigException:
                        self.logger.info("In-cluster config not found. Falling back to default kubeconfig context.")
                        kubernetes.config.load_kube_config()
                        self.logger.info("Successfully loaded default kubeconfig context.")

                configuration = kubernetes.client.Configuration.get_default_copy()
                if self._insecure:
                    configuration.verify_ssl = False
                    configuration.assert_hostname = False

                self._api_client = kubernetes.client.ApiClient(configuration)
                self._core_v1 = kubernetes.client.CoreV1Api(self._api_client)

            except Exception as e:
                identifier = self._context or "in-cluster/default"
                error_msg = f"Failed to initialize Kubernetes client for {identifier}: {e}"
                self.logger.error(error_msg)
                raise KubernetesControllerException(error_msg) from e

    @property
    def core_v1(self) -> kubernetes.client.CoreV1Api:
        self._initialize_client()
        return self._core_v1

    # ------------------------------------------------------------------
    # Pull secrets
    # ------------------------------------------------------------------

    def read_pull_secret(self, name: str, namespace: str) -> dict[str, Any]:
        """Read an image pull secret and return it as a Docker config dict.

        Both ``kubernetes.io/dockerconfigjson`` secrets and legacy
        ``kubernetes.io/dockercfg`` secrets are accepted; the latter are
        wrapped so the result always has an ``auths`` mapping.

        Args:
            name: Secret name.
            namespace: Kubernetes namespace.

        Returns:
            Dict shaped like ``~/.docker/config.json``.

        Raises:
            KubernetesControllerException: If the secret cannot be read or is
                not a registry credential secret.
        """
        try:
            secret = self.core_v1.read_namespaced_secret(name=name, namespace=namespace)
        except KubernetesControllerException:
            raise
        except Exception as e:
            raise KubernetesControllerException(f"Could not read Secret {namespace}/{name}: {e}") from e

        data_key = _PULL_SECRET_KEYS.get(secret.type)
        if data_key is None:
            raise KubernetesControllerException(
                f"Secret {namespace}/{name} has type {secret.type}, expected one of {sorted(_PULL_SECRET_KEYS)}"
            )

        encoded = (secret.data or {}).get(data_key)
        if not encoded:
            raise KubernetesControllerException(f"Secret {namespace}/{name} has no '{data_key}' entry")

        try:
            config = json.loads(base64.b64decode(encoded))
        except (binascii.Error, ValueError) as e:
            raise KubernetesControllerException(f"Secret {namespace}/{name} does not hold valid JSON: {e}") from e
        if not isinstance(config, dict):
            raise KubernetesControllerException(f"Secret {namespace}/{name} must hold a JSON object")

        self.logger.info(f"Loaded registry credentials from Secret {namespace}/{name}")
        if data_key == ".dockercfg":
            return {"auths": config}
        return config
