"""Kubepin: pin Kubernetes manifest images to content digests.

Rewrites each manifest given on the command line so that every ``image:``
referenced by tag is referenced by digest instead:

1. Read and parse the manifest
2. Collect tag-form image references
3. Resolve each tag against its registry
4. Substitute the digest references
5. Emit the rewritten manifest on standard output
"""

from __future__ import annotations

import argparse
import logging
import pathlib
import sys

from ._version import __version__
from .image_walker import collect_tagged_images, rewrite_images
from .keychain import AuthenticationProvider, DockerConfigKeychain, MultiKeychain, PullSecretKeychain
from .kubernetes_controller import KubernetesController, KubernetesControllerException
from .manifest_codec import ParseError, parse_manifest, serialize_manifest
from .models import DEFAULT_REQUEST_TIMEOUT_SECONDS, DEFAULT_RESOLVE_WORKERS, MAX_RESOLVE_WORKERS
from .registry_client import RegistryClient
from .registry_resolver import RegistryResolver, ResolveError

logger = logging.getLogger(__name__)


class UsageError(Exception):
    """Raised when the command line names no manifest files."""


class ManifestReadError(Exception):
    """Raised when a manifest file cannot be found or read."""


def _setup_logging(verbose: bool = False) -> None:
    """Configure logging for CLI usage. Only called from main()."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s : %(name)-13s : %(levelname)s :: %(message)s",
        stream=sys.stderr,
    )
    # urllib3 logs every connection at DEBUG
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def _get_current_namespace() -> str:
    """Read active namespace from kubeconfig or in-cluster service account."""
    import kubernetes.config

    # 1. Try kubeconfig (local dev)
    try:
        _, active_context = kubernetes.config.list_kube_config_contexts()
        if ns := active_context.get("context", {}).get("namespace"):
            return ns
    except Exception:  # noqa: S110
        pass

    # 2. Try in-cluster service account (running in Pod)
    try:
        with open("/var/run/secrets/kubernetes.io/serviceaccount/namespace") as f:
            return f.read().strip()
    except FileNotFoundError:
        pass

    # 3. Fallback
    return "default"


# ---------------------------------------------------------------------------
# Manifest files
# ---------------------------------------------------------------------------


def locate_manifest(path: str, base_dir: str | None = None) -> pathlib.Path:
    """Find a manifest file on disk.

    The path is tried as given (relative to the working directory) first and
    then, when relative, relative to ``base_dir``.

    Args:
        path: Path as given on the command line.
        base_dir: Fallback directory, typically where an outer tool was invoked.

    Returns:
        The existing path.

    Raises:
        ManifestReadError: If the file exists under neither interpretation.
    """
    candidate = pathlib.Path(path)
    if candidate.exists():
        return candidate

    if base_dir and not candidate.is_absolute():
        fallback = pathlib.Path(base_dir) / candidate
        if fallback.exists():
            return fallback

    raise ManifestReadError(f"File not found: {path}")


def read_manifest(path: str, base_dir: str | None = None) -> bytes:
    """Locate and read a manifest file.

    Raises:
        ManifestReadError: If the file is missing or unreadable.
    """
    located = locate_manifest(path=path, base_dir=base_dir)
    try:
        return located.read_bytes()
    except OSError as e:
        raise ManifestReadError(f"Could not read {path}: {e}") from e


def process_manifest(data: bytes | str, resolver: RegistryResolver) -> str:
    """Run the parse → collect → resolve → rewrite → serialize pipeline on one manifest.

    Args:
        data: Raw manifest content.
        resolver: Resolver used for the tag-form references found.

    Returns:
        The rewritten manifest, or an empty string for an empty document.

    Raises:
        ParseError: If the manifest is not a valid document.
        ResolveError: If any collected image cannot be resolved.
    """
    document = parse_manifest(data)
    if document.is_empty:
        return ""

    images = collect_tagged_images(document.root)
    digest_map = resolver.resolve(images)
    rewrite_images(document.root, digest_map)
    return serialize_manifest(document)


def format_section(path: str, body: str) -> str:
    """Frame a rewritten manifest with its ``--- <path> ---`` header."""
    return f"\n--- {path} ---\n\n{body}"


# ---------------------------------------------------------------------------
# CLI argument parsing
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="resolve",
        description="Kubepin: rewrite Kubernetes manifests so every image is referenced by digest",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument("files", nargs="*", metavar="FILE", help="Manifest files to rewrite, in output order")
    parser.add_argument(
        "--base-dir",
        help="Directory used to resolve relative paths that do not exist in the working directory",
    )
    parser.add_argument(
        "--context",
        help="Kubeconfig context name used to read --pull-secret",
    )
    parser.add_argument(
        "--pull-secret",
        help="Name of a kubernetes.io/dockerconfigjson Secret whose credentials take precedence",
    )
    parser.add_argument(
        "--namespace",
        help="Namespace of --pull-secret (default: from kubeconfig or 'default')",
    )
    parser.add_argument(
        "--insecure",
        action="store_true",
        help="Skip TLS verification when reading --pull-secret from the Kubernetes API",
    )
    parser.add_argument(
        "--insecure-registry",
        action="append",
        default=[],
        metavar="HOST",
        help="Registry host to reach over plain HTTP; may be repeated",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=DEFAULT_REQUEST_TIMEOUT_SECONDS,
        help="Timeout in seconds for each registry request",
    )
    parser.add_argument(
        "--workers",
        type=int,
        default=DEFAULT_RESOLVE_WORKERS,
        help=f"Simultaneous registry requests per file (1-{MAX_RESOLVE_WORKERS})",
    )
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def parse_args(args: list[str] | None = None) -> argparse.Namespace:
    """Parse command line arguments.

    Args:
        args: Optional list of argument strings (defaults to ``sys.argv``).

    Returns:
        Parsed ``argparse.Namespace``.
    """
    return build_parser().parse_args(args)


# ---------------------------------------------------------------------------
# Main execution
# ---------------------------------------------------------------------------


def build_keychain(args: argparse.Namespace) -> AuthenticationProvider:
    """Build the credential chain: the pull secret first (if any), then the Docker config.

    Raises:
        KubernetesControllerException: If the pull secret cannot be read.
    """
    docker_keychain = DockerConfigKeychain()
    if not args.pull_secret:
        return docker_keychain

    namespace = args.namespace or _get_current_namespace()
    controller = KubernetesController(context=args.context, insecure=args.insecure)
    pull_secret = controller.read_pull_secret(name=args.pull_secret, namespace=namespace)
    return MultiKeychain(PullSecretKeychain(pull_secret), docker_keychain)


def build_resolver(args: argparse.Namespace, keychain: AuthenticationProvider) -> RegistryResolver:
    client = RegistryClient(
        timeout=args.timeout,
        insecure_registries=set(args.insecure_registry),
        pool_size=args.workers,
    )
    return RegistryResolver(client=client, keychain=keychain, max_workers=args.workers)


def run_resolve(args: argparse.Namespace) -> int:
    """Main execution flow.

    Files are processed one after another in argument order. Each rewritten
    manifest is written only once it is complete; manifests written before a
    failure stay written.

    Args:
        args: Parsed CLI arguments.

    Returns:
        Process exit code (0 = all files rewritten, 1 = any error).
    """
    try:
        if not args.files:
            raise UsageError("At least one manifest file is required")
        resolver = build_resolver(args=args, keychain=build_keychain(args=args))
    except UsageError as e:
        sys.stderr.write(build_parser().format_usage())
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except KubernetesControllerException as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    for path in args.files:
        try:
            data = read_manifest(path=path, base_dir=args.base_dir)
            rewritten = process_manifest(data=data, resolver=resolver)
        except (ManifestReadError, ParseError, ResolveError) as e:
            print(f"Error: {path}: {e}", file=sys.stderr)
            return 1

        if not rewritten:
            logger.debug(f"Skipping empty manifest {path}")
            continue

        sys.stdout.write(format_section(path=path, body=rewritten))
        sys.stdout.flush()

    return 0


def main() -> None:
    """CLI entry point for kubepin."""
    try:
        parsed_args = parse_args()
        _setup_logging(verbose=parsed_args.verbose)
        sys.exit(run_resolve(args=parsed_args))
    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
