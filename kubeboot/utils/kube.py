import logging
import os
from pathlib import Path
from typing import Iterable, List, Optional

from kubernetes import client, config
from kubernetes.client.rest import ApiException
from urllib3.exceptions import HTTPError
import yaml

logger = logging.getLogger("kubeboot.kube")


def find_kubeconfig(candidates: Iterable[Optional[str]]) -> Optional[str]:
    """Return the first kubeconfig path that exists, or None."""
    for candidate in candidates:
        if not candidate:
            continue
        resolved = Path(os.path.expanduser(candidate))
        if resolved.exists():
            return str(resolved)
    return None


def load_kubeconfig(path: Optional[str] = None) -> client.ApiClient:
    """
    Build an API client from a kubeconfig path or from the KUBECONFIG_CONTENT env var.
    Never touches the global default configuration.
    """
    # CI/CD secret-based loading
    if "KUBECONFIG_CONTENT" in os.environ:
        # parsed in memory; the credentials never touch disk
        return config.new_client_from_config_dict(yaml.safe_load(os.environ["KUBECONFIG_CONTENT"]))

    if path:
        resolved = Path(os.path.expanduser(path)).resolve()
        if not resolved.exists():
            raise FileNotFoundError(f"❌ Kubeconfig not found: {resolved}")
        return config.new_client_from_config(config_file=str(resolved))

    raise ValueError("No kubeconfig path provided and KUBECONFIG_CONTENT is not set.")


def api_reachable(api_client: client.ApiClient) -> bool:
    """Liveness query against the API server."""
    try:
        client.VersionApi(api_client).get_code(_request_timeout=5)
        return True
    except (ApiException, HTTPError, OSError) as e:
        logger.debug(f"API server not reachable: {e}")
        return False


def pod_is_ready(pod) -> bool:
    if not pod.status or pod.status.phase != "Running":
        return False
    return any(
        c.type == "Ready" and c.status == "True"
        for c in (pod.status.conditions or [])
    )


def node_is_ready(node) -> bool:
    return any(
        c.type == "Ready" and c.status == "True"
        for c in ((node.status and node.status.conditions) or [])
    )


def list_pods(core: client.CoreV1Api, namespace: str, label_selector: Optional[str] = None) -> List:
    """List pods, treating a missing namespace as empty."""
    try:
        kwargs = {"label_selector": label_selector} if label_selector else {}
        return core.list_namespaced_pod(namespace, **kwargs).items
    except ApiException as e:
        if e.status == 404:
            return []
        raise
