"""Read-only cluster verification.

Nothing here mutates the cluster. The report is computed from live queries
on every call and never cached.
"""
import logging
import os
from collections import OrderedDict
from typing import List, Optional

from kubernetes import client
from kubernetes.client.rest import ApiException

from ..config import BootstrapContext
from ..errors import PrerequisiteError
from ..models import ClusterReport, NamespacePods
from ..utils.kube import api_reachable, find_kubeconfig, list_pods, load_kubeconfig, node_is_ready, pod_is_ready
from .fabric import FABRIC_NAMESPACE, OPERATOR_GROUP, OPERATOR_VERSION

COMPONENT = "verify"

logger = logging.getLogger("kubeboot.verify")

CONTROL_PLANE_LABELS = ("node-role.kubernetes.io/control-plane", "node-role.kubernetes.io/master")
DNS_SELECTOR = "k8s-app=kube-dns"
CONTROL_PLANE_SELECTOR = "tier=control-plane"


def kubeconfig_candidates(ctx: BootstrapContext) -> List[Optional[str]]:
    """Where to look for credentials, in order."""
    return [
        ctx.kubeconfig,
        ctx.paths.admin_conf,
        os.path.expanduser("~/.kube/config"),
        ctx.paths.kubelet_conf,
    ]


def connect(ctx: BootstrapContext) -> client.ApiClient:
    """Find credentials and make sure the API server answers.

    Raises:
        PrerequisiteError: If no kubeconfig is found or the API is unreachable
    """
    logger.info("Checking prerequisites for cluster verification...")
    if "KUBECONFIG_CONTENT" in os.environ:
        api_client = load_kubeconfig()
    else:
        path = find_kubeconfig(kubeconfig_candidates(ctx))
        if not path:
            raise PrerequisiteError("No kubeconfig found",
                                    remediation="run on a cluster node or pass --kubeconfig",
                                    component=COMPONENT, step="prerequisites")
        logger.info(f"Using kubeconfig: {path}")
        api_client = load_kubeconfig(path)

    if not api_reachable(api_client):
        raise PrerequisiteError("Cannot connect to Kubernetes cluster",
                                remediation="check that the control plane is running",
                                component=COMPONENT, step="prerequisites")
    logger.info("Prerequisites check completed successfully")
    return api_client


class ClusterVerifier:
    """Collects a ClusterReport from the API server."""

    def __init__(self, api_client: client.ApiClient):
        self.api_client = api_client
        self.core = client.CoreV1Api(api_client)
        self.storage = client.StorageV1Api(api_client)
        self.custom = client.CustomObjectsApi(api_client)
        self.version = client.VersionApi(api_client)

    def verify(self) -> ClusterReport:
        """Run every check; a section the credentials cannot read is reported, not fatal."""
        report = ClusterReport()
        logger.info("🔍 Starting Kubernetes cluster verification")
        sections = [
            ("cluster info", self.check_cluster_info),
            ("nodes", self.check_nodes),
            ("pods", self.check_pods),
            ("networking", self.check_networking),
            ("control plane components", self.check_components),
            ("resource usage", self.check_resources),
            ("storage", self.check_storage),
            ("DNS", self.check_dns),
        ]
        for name, check in sections:
            try:
                check(report)
            except ApiException as e:
                message = f"Cannot check {name}: {e.status} {e.reason}"
                logger.warning(f"⚠️  {message}")
                report.issues.append(message)
                report.unchecked.append(name)
        self.log_summary(report)
        return report

    def check_cluster_info(self, report: ClusterReport) -> None:
        info = self.version.get_code()
        report.server_version = info.git_version
        logger.info(f"Kubernetes version: {info.git_version}")
        report.services = len(self.core.list_service_for_all_namespaces().items)

    def check_nodes(self, report: ClusterReport) -> None:
        logger.info("=== Node Status ===")
        # ready is computed from the same list as total
        nodes = self.core.list_node().items
        report.total_nodes = len(nodes)
        for node in nodes:
            name = node.metadata.name
            labels = node.metadata.labels or {}
            if any(label in labels for label in CONTROL_PLANE_LABELS):
                report.control_plane_nodes += 1
            if node_is_ready(node):
                report.ready_nodes += 1
            else:
                report.not_ready.append(name)

        if report.total_nodes == 0:
            logger.warning("⚠️  No nodes found")
            report.issues.append("No nodes found")
        elif report.ready_nodes == report.total_nodes:
            logger.info(f"✅ All nodes are Ready ({report.node_ratio})")
        else:
            message = (f"Not all nodes are Ready ({report.node_ratio} ready, "
                       f"{len(report.not_ready)} not ready: {', '.join(report.not_ready)})")
            logger.warning(f"⚠️  {message}")
            report.issues.append(message)
        logger.info(f"Control plane nodes: {report.control_plane_nodes}")
        logger.info(f"Worker nodes: {report.worker_nodes}")

    def check_pods(self, report: ClusterReport) -> None:
        logger.info("=== Pod Status ===")
        namespaces = OrderedDict()
        for pod in self.core.list_pod_for_all_namespaces().items:
            ns = pod.metadata.namespace
            counts = namespaces.setdefault(ns, NamespacePods(namespace=ns))
            counts.total += 1
            phase = pod.status.phase if pod.status else None
            if phase == "Running":
                counts.running += 1
            elif phase == "Pending":
                counts.pending += 1
            elif phase in ("Failed", "Unknown"):
                counts.failed += 1
        report.namespaces = dict(namespaces)

        for ns, counts in sorted(report.namespaces.items()):
            line = f"{ns}: {counts.ratio} Running"
            if counts.running == counts.total:
                logger.info(f"✅ {line}")
                continue
            logger.warning(f"⚠️  {line} (pending: {counts.pending}, failed: {counts.failed})")
            report.issues.append(f"Not all pods in {ns} are Running ({counts.ratio})")

    def check_networking(self, report: ClusterReport) -> None:
        logger.info("=== Network Status ===")
        try:
            installation = self.custom.get_cluster_custom_object(
                OPERATOR_GROUP, OPERATOR_VERSION, "installations", "default"
            )
        except ApiException as e:
            if e.status != 404:
                raise
            installation = None

        if installation is None:
            report.fabric_installed = bool(list_pods(self.core, FABRIC_NAMESPACE))
            if report.fabric_installed:
                logger.info(f"Calico pods found in {FABRIC_NAMESPACE}")
            else:
                logger.warning("⚠️  CNI installation status unknown")
                report.issues.append("Network fabric not found")
            return

        report.fabric_installed = True
        conditions = (installation.get("status") or {}).get("conditions") or []
        report.fabric_available = any(
            c.get("type") == "Available" and c.get("status") == "True" for c in conditions
        )
        if report.fabric_available:
            logger.info("✅ Calico CNI is Available")
        else:
            logger.warning("⚠️  Calico CNI is not Available yet")
            report.issues.append("Network fabric not Available")

    def check_components(self, report: ClusterReport) -> None:
        logger.info("=== Control Plane Components ===")
        pods = list_pods(self.core, "kube-system", CONTROL_PLANE_SELECTOR)
        for pod in pods:
            if pod_is_ready(pod):
                logger.info(f"✅ {pod.metadata.name}")
            else:
                logger.warning(f"⚠️  {pod.metadata.name} is not ready")
                report.issues.append(f"Control plane component {pod.metadata.name} is not ready")

    def check_resources(self, report: ClusterReport) -> None:
        logger.info("=== Resource Usage ===")
        try:
            metrics = self.custom.list_cluster_custom_object("metrics.k8s.io", "v1beta1", "nodes")
        except ApiException as e:
            logger.warning(f"⚠️  Metrics server not installed or not ready ({e.status})")
            return
        report.metrics_available = True
        for item in metrics.get("items", []):
            name = item.get("metadata", {}).get("name", "")
            usage = item.get("usage", {})
            report.node_metrics[name] = {"cpu": usage.get("cpu", ""), "memory": usage.get("memory", "")}
            logger.info(f"{name}: cpu={usage.get('cpu', '?')} memory={usage.get('memory', '?')}")

    def check_storage(self, report: ClusterReport) -> None:
        logger.info("=== Storage ===")
        report.storage_classes = [sc.metadata.name for sc in self.storage.list_storage_class().items]
        report.persistent_volumes = len(self.core.list_persistent_volume().items)
        report.persistent_volume_claims = len(
            self.core.list_persistent_volume_claim_for_all_namespaces().items
        )
        if report.storage_classes:
            logger.info(f"Storage classes: {', '.join(report.storage_classes)}")
        else:
            logger.info("No storage classes configured")
        logger.info(f"Persistent volumes: {report.persistent_volumes}, "
                    f"claims: {report.persistent_volume_claims}")

    def check_dns(self, report: ClusterReport) -> None:
        logger.info("=== DNS ===")
        pods = list_pods(self.core, "kube-system", DNS_SELECTOR)
        report.dns_total_pods = len(pods)
        report.dns_ready_pods = len([p for p in pods if pod_is_ready(p)])
        if report.dns_total_pods and report.dns_ready_pods == report.dns_total_pods:
            logger.info(f"✅ CoreDNS is running ({report.dns_ready_pods} pods)")
        else:
            message = f"CoreDNS pods ready: {report.dns_ready_pods}/{report.dns_total_pods}"
            logger.warning(f"⚠️  {message}")
            report.issues.append(message)

    def log_summary(self, report: ClusterReport) -> None:
        logger.info("=== Verification Summary ===")
        logger.info(f"Nodes: {report.node_ratio} Ready")
        logger.info(f"Pods: {report.pod_ratio} Running")
        if report.status == "PASS":
            logger.info("✅ Cluster verification PASSED")
        else:
            logger.warning("⚠️  Cluster verification completed with warnings")


def verify_cluster(ctx: BootstrapContext, api_client: Optional[client.ApiClient] = None) -> ClusterReport:
    """Build a fresh ClusterReport.

    Args:
        ctx: Bootstrap context (used to locate credentials)
        api_client: Pre-built API client; looked up from the context if None

    Raises:
        PrerequisiteError: If no credentials are found or the API is unreachable
    """
    if api_client is None:
        api_client = connect(ctx)
    return ClusterVerifier(api_client).verify()
