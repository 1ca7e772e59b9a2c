"""Overlay network fabric (Calico, operator-managed) installer."""
import logging
import time
import warnings
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from kubernetes import client
from kubernetes.client.rest import ApiException

from ..config import BootstrapContext
from ..errors import (
    BootstrapError,
    CommandError,
    PartialConvergenceWarning,
    PrerequisiteError,
    ReadinessTimeoutError,
    TransientReadinessError,
)
from ..models import ComponentResult, LifecycleState
from ..state import NodeStateStore
from ..utils import CommandRunner, retry_with_timeout
from ..utils.kube import api_reachable, list_pods, load_kubeconfig, pod_is_ready

COMPONENT = "network"

logger = logging.getLogger("kubeboot.network")

OPERATOR_GROUP = "operator.tigera.io"
OPERATOR_VERSION = "v1"
OPERATOR_NAMESPACE = "tigera-operator"
FABRIC_NAMESPACE = "calico-system"
LEGACY_NAMESPACE = "kube-system"
OPERATOR_SELECTOR = "k8s-app=tigera-operator"
NODE_SELECTOR = "k8s-app=calico-node"
CONTROLLERS_SELECTOR = "k8s-app=calico-kube-controllers"
NAMESPACE_POLL_INTERVAL = 5


def installation_resource(ctx: BootstrapContext) -> Dict[str, Any]:
    """The desired ``Installation`` custom resource."""
    fabric = ctx.fabric
    return {
        "apiVersion": f"{OPERATOR_GROUP}/{OPERATOR_VERSION}",
        "kind": "Installation",
        "metadata": {"name": "default"},
        "spec": {
            "calicoNetwork": {
                "ipPools": [{
                    "blockSize": fabric.block_size,
                    "cidr": ctx.network.pod_cidr,
                    "encapsulation": fabric.encapsulation,
                    "natOutgoing": "Enabled",
                    "nodeSelector": "all()",
                }],
                "mtu": fabric.mtu,
            },
            "nodeUpdateStrategy": {
                "type": "RollingUpdate",
                "rollingUpdate": {"maxUnavailable": 1},
            },
        },
    }


def apiserver_resource() -> Dict[str, Any]:
    return {
        "apiVersion": f"{OPERATOR_GROUP}/{OPERATOR_VERSION}",
        "kind": "APIServer",
        "metadata": {"name": "default"},
        "spec": {},
    }


class FabricInstaller:
    """Deploys the fabric operator and its custom resources."""

    def __init__(
        self,
        ctx: BootstrapContext,
        api_client: Optional[client.ApiClient] = None,
        runner: Optional[CommandRunner] = None,
        state: Optional[NodeStateStore] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ctx = ctx
        self.api_client = api_client
        self.runner = runner or CommandRunner(dry_run=ctx.dry_run, timeout=ctx.timeouts.command_timeout)
        self.state = state or NodeStateStore(ctx.paths.state_file, dry_run=ctx.dry_run)
        self.sleep = sleep
        self.clock = clock
        self._core: Optional[client.CoreV1Api] = None
        self._custom: Optional[client.CustomObjectsApi] = None

    @property
    def core(self) -> client.CoreV1Api:
        if self._core is None:
            self._core = client.CoreV1Api(self.api_client)
        return self._core

    @property
    def custom(self) -> client.CustomObjectsApi:
        if self._custom is None:
            self._custom = client.CustomObjectsApi(self.api_client)
        return self._custom

    def install(self) -> ComponentResult:
        """Install the overlay network fabric.

        Returns:
            ComponentResult; ``changed`` is False when agents already exist.
            Agent readiness shortfalls are listed in ``warnings``.

        Raises:
            PrerequisiteError: If kubectl, admin credentials or the API are missing
            ReadinessTimeoutError: If the operator or the calico-system namespace never appears
        """
        logger.info(f"Starting Calico {self.ctx.versions.fabric} installation")
        self.check_prerequisites()

        if self.is_installed():
            logger.info("✅ Calico is already installed, skipping")
            self.state.reach(LifecycleState.NETWORKED, COMPONENT)
            return ComponentResult(COMPONENT, False, "Network fabric already installed")

        self.deploy_operator()
        self.wait_for_operator()
        self.submit_resources()

        soft_failures = self.wait_for_agents()
        soft_failures += self.wait_for_available()

        details = {"version": self.ctx.versions.fabric, "pod_cidr": self.ctx.network.pod_cidr}
        self.state.advance(LifecycleState.NETWORKED, COMPONENT, fabric_version=self.ctx.versions.fabric)
        if soft_failures:
            logger.warning("⚠️  Calico installed; some components are still converging")
            return ComponentResult(COMPONENT, True, "Network fabric installed (still converging)",
                                   details=details, warnings=soft_failures)

        self.state.advance(LifecycleState.READY, COMPONENT)
        logger.info("✅ Calico installation completed successfully")
        return ComponentResult(COMPONENT, True, "Network fabric installed", details=details)

    def check_prerequisites(self) -> None:
        logger.info("Checking prerequisites for Calico installation...")
        admin_conf = self.ctx.paths.admin_conf
        if not self.runner.which("kubectl"):
            raise PrerequisiteError("kubectl not found", remediation="run 'kubeboot install' first",
                                    component=COMPONENT, step="prerequisites")
        if self.api_client is None:
            if not Path(admin_conf).exists():
                raise PrerequisiteError(f"Kubernetes admin config not found at {admin_conf}",
                                        remediation="run 'kubeboot init' first",
                                        component=COMPONENT, step="prerequisites")
            self.api_client = load_kubeconfig(admin_conf)
        if not api_reachable(self.api_client):
            raise PrerequisiteError("Cannot connect to Kubernetes cluster",
                                    remediation="check that the control plane is running",
                                    component=COMPONENT, step="prerequisites")
        logger.info("Prerequisites check completed successfully")

    def is_installed(self) -> bool:
        logger.info("Checking for existing Calico installation...")
        current = list_pods(self.core, FABRIC_NAMESPACE)
        if current:
            logger.info(f"Calico is already installed ({len(current)} pods in {FABRIC_NAMESPACE})")
            return True
        legacy = list_pods(self.core, LEGACY_NAMESPACE, NODE_SELECTOR)
        if legacy:
            logger.info(f"Legacy Calico installation found ({len(legacy)} calico-node pods in {LEGACY_NAMESPACE})")
            return True
        logger.info("Calico is not installed")
        return False

    def deploy_operator(self) -> None:
        url = self.ctx.fabric.manifest_url(self.ctx.versions.fabric)
        logger.info(f"📦 Installing Tigera Calico operator from {url}")
        try:
            self.runner.run(
                ["kubectl", "create", "-f", url],
                env={"KUBECONFIG": self.ctx.paths.admin_conf},
            )
        except CommandError as e:
            if "AlreadyExists" not in e.output:
                e.component, e.step = COMPONENT, "deploy-operator"
                raise
            logger.warning("⚠️  Some operator resources already exist; continuing")
        logger.info("Calico operator installed successfully")

    def wait_for_operator(self) -> None:
        logger.info("Waiting for Calico operator to be ready...")
        if self.runner.dry_run:
            return
        timeouts = self.ctx.timeouts
        retry_with_timeout(
            lambda: self._namespace_exists(OPERATOR_NAMESPACE),
            interval=NAMESPACE_POLL_INTERVAL,
            attempts=timeouts.fabric_namespace_attempts,
            description=f"{OPERATOR_NAMESPACE} namespace",
            component=COMPONENT, step="operator-namespace",
            sleep=self.sleep, clock=self.clock,
        )
        retry_with_timeout(
            lambda: self._pods_ready(OPERATOR_NAMESPACE, OPERATOR_SELECTOR),
            interval=timeouts.readiness_interval,
            timeout=timeouts.fabric_operator_timeout,
            description="operator pod",
            component=COMPONENT, step="operator-ready",
            sleep=self.sleep, clock=self.clock,
        )
        logger.info("Calico operator is ready")

    def submit_resources(self) -> None:
        logger.info("Creating Calico custom resources...")
        logger.info(f"Pod CIDR: {self.ctx.network.pod_cidr}")
        for plural, body in (("installations", installation_resource(self.ctx)),
                             ("apiservers", apiserver_resource())):
            if self.runner.dry_run:
                logger.info(f"[DRY RUN] Would create {body['kind']}/{body['metadata']['name']}")
                continue
            self._apply_cluster_object(plural, body)
        logger.info("Calico custom resources created successfully")

    def wait_for_agents(self) -> List[str]:
        """Wait for the calico-system namespace (fatal), then calico-node and
        calico-kube-controllers (never fatal)."""
        logger.info("Waiting for Calico pods to be ready (this may take several minutes)...")
        if self.runner.dry_run:
            return []
        timeouts = self.ctx.timeouts
        retry_with_timeout(
            lambda: self._namespace_exists(FABRIC_NAMESPACE),
            interval=NAMESPACE_POLL_INTERVAL,
            attempts=timeouts.fabric_system_namespace_attempts,
            description=f"{FABRIC_NAMESPACE} namespace",
            component=COMPONENT, step="fabric-namespace",
            sleep=self.sleep, clock=self.clock,
        )
        problems: List[str] = []
        waits = [
            (NODE_SELECTOR, timeouts.fabric_agent_timeout, "calico-node pods"),
            (CONTROLLERS_SELECTOR, timeouts.fabric_available_timeout, "calico-kube-controllers"),
        ]
        for selector, budget, description in waits:
            failure = self._soft_wait(
                lambda: self._pods_ready(FABRIC_NAMESPACE, selector),
                timeouts.readiness_interval, budget, description,
            )
            if failure:
                problems.append(failure)
        if not problems:
            logger.info("Calico pods are ready")
        return problems

    def wait_for_available(self) -> List[str]:
        """Wait for the Installation's Available condition; never fatal."""
        logger.info("Checking Calico installation status...")
        if self.runner.dry_run:
            return []
        failure = self._soft_wait(
            self._installation_available,
            self.ctx.timeouts.readiness_interval,
            self.ctx.timeouts.fabric_available_timeout,
            "Calico installation Available condition",
        )
        if failure:
            return [failure]
        logger.info("Calico installation is Available")
        return []

    def _soft_wait(self, probe, interval: float, budget: float, description: str) -> Optional[str]:
        try:
            retry_with_timeout(
                probe, interval=interval, timeout=budget, description=description,
                component=COMPONENT, sleep=self.sleep, clock=self.clock,
            )
        except ReadinessTimeoutError as e:
            message = f"{description} not ready within {int(budget)}s"
            logger.warning(f"⚠️  {message} ({e.attempts} checks)")
            warnings.warn(message, PartialConvergenceWarning)
            return message
        return None

    def _namespace_exists(self, name: str) -> bool:
        try:
            self.core.read_namespace(name)
        except ApiException as e:
            if e.status == 404:
                return False
            raise TransientReadinessError(f"Cannot read namespace {name}: {e.reason}") from e
        logger.info(f"{name} namespace is ready")
        return True

    def _pods_ready(self, namespace: str, selector: str) -> bool:
        try:
            pods = list_pods(self.core, namespace, selector)
        except ApiException as e:
            raise TransientReadinessError(f"Cannot list pods in {namespace}: {e.reason}") from e
        if not pods:
            return False
        ready = [p for p in pods if pod_is_ready(p)]
        logger.debug(f"{namespace}/{selector}: {len(ready)}/{len(pods)} ready")
        return len(ready) == len(pods)

    def _installation_available(self) -> bool:
        try:
            installation = self.custom.get_cluster_custom_object(
                OPERATOR_GROUP, OPERATOR_VERSION, "installations", "default"
            )
        except ApiException as e:
            if e.status == 404:
                return False
            raise TransientReadinessError(f"Cannot read installation: {e.reason}") from e
        conditions = (installation.get("status") or {}).get("conditions") or []
        return any(c.get("type") == "Available" and c.get("status") == "True" for c in conditions)

    def _apply_cluster_object(self, plural: str, body: Dict[str, Any]) -> None:
        name = body["metadata"]["name"]
        try:
            self.custom.create_cluster_custom_object(OPERATOR_GROUP, OPERATOR_VERSION, plural, body)
            logger.info(f"Created {body['kind']}/{name}")
        except ApiException as e:
            if e.status != 409:
                raise BootstrapError(f"Failed to create {body['kind']}/{name}: {e.reason}",
                                     component=COMPONENT, step="custom-resources") from e
            try:
                self.custom.patch_cluster_custom_object(
                    OPERATOR_GROUP, OPERATOR_VERSION, plural, name, {"spec": body["spec"]}
                )
            except ApiException as patch_error:
                raise BootstrapError(f"Failed to update {body['kind']}/{name}: {patch_error.reason}",
                                     component=COMPONENT, step="custom-resources") from patch_error
            logger.info(f"Updated existing {body['kind']}/{name}")


def install_fabric(ctx: BootstrapContext, api_client: Optional[client.ApiClient] = None, **kwargs) -> ComponentResult:
    """Module-level entry point used by the CLI."""
    return FabricInstaller(ctx, api_client=api_client, **kwargs).install()
