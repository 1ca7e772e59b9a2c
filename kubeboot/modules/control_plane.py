"""Control-plane initializer, run once on the leader."""
import logging
import os
import pwd
import shutil
import time
from pathlib import Path
from typing import Callable, List, Optional

from ..config import BootstrapContext
from ..errors import (
    BootstrapError,
    MalformedHandoffError,
    PrerequisiteError,
    ReadinessTimeoutError,
    RendezvousUnavailable,
    TransientReadinessError,
)
from ..models import ComponentResult, JoinCredential, LifecycleState, NodeRole
from ..rendezvous import FileRendezvousChannel, RendezvousChannel
from ..state import NodeStateStore
from ..utils import CommandRunner, detect_primary_address, retry_with_timeout

COMPONENT = "init"

logger = logging.getLogger("kubeboot.init")

# the reference VMs are small; kubeadm's CPU and memory floor is advisory here
PREFLIGHT_FLAGS = ["--ignore-preflight-errors=NumCPU,Mem", "--v=5"]


class ControlPlaneInitializer:
    """Creates the cluster on the leader and publishes the join credential."""

    def __init__(
        self,
        ctx: BootstrapContext,
        runner: Optional[CommandRunner] = None,
        channel: Optional[RendezvousChannel] = None,
        state: Optional[NodeStateStore] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.ctx = ctx
        self.paths = ctx.paths
        self.runner = runner or CommandRunner(dry_run=ctx.dry_run, timeout=ctx.timeouts.command_timeout)
        self.channel = channel or FileRendezvousChannel(ctx.rendezvous.mount_path, ctx.rendezvous.directory)
        self.state = state or NodeStateStore(ctx.paths.state_file, dry_run=ctx.dry_run)
        self.sleep = sleep

    def initialize(self) -> ComponentResult:
        """Bring up the control plane and hand the join credential to workers.

        Returns:
            ComponentResult; ``changed`` is False if the cluster already exists

        Raises:
            PrerequisiteError: If the node is not ready for kubeadm init
            MalformedHandoffError: If kubeadm printed an unusable join command
            ReadinessTimeoutError: If the API server never answers
        """
        logger.info("Starting Kubernetes control plane initialization")

        if self.is_initialized():
            logger.info("✅ Kubernetes control plane is already initialized, skipping")
            self.state.reach(LifecycleState.INITIALIZED, COMPONENT, role=NodeRole.LEADER)
            return ComponentResult(COMPONENT, False, "Control plane already initialized",
                                   details={"credentials": self.paths.admin_conf})

        warnings = self.check_prerequisites()

        address = self.ctx.network.advertise_address or detect_primary_address()
        logger.info(f"Using API server advertise address: {address}")

        self.run_kubeadm_init(address)
        kubeconfigs = self.setup_kubeconfig()

        credential = self.create_join_credential()
        published = self.publish(credential) if credential else None
        if credential and published is None:
            warnings.append("Join command was not published to shared storage")
            unpublished = credential.to_command()
        else:
            unpublished = None

        self.report_taints()
        self.wait_for_api_server()

        details = {
            "credentials": self.paths.admin_conf,
            "kubeconfigs": kubeconfigs,
            "advertise_address": address,
        }
        if credential is not None:
            details["endpoint"] = credential.endpoint
        if published is not None:
            details["epoch"] = published.epoch
        if unpublished:
            details["join_command"] = unpublished
        self.state.advance(
            LifecycleState.INITIALIZED, COMPONENT,
            role=NodeRole.LEADER, address=address,
            endpoint=credential.endpoint if credential else None,
            published_epoch=published.epoch if published else None,
        )
        self.display_cluster_info()
        logger.info("✅ Kubernetes control plane initialization completed successfully")
        return ComponentResult(COMPONENT, True, "Control plane initialized", details=details, warnings=warnings)

    def is_initialized(self) -> bool:
        if not Path(self.paths.admin_conf).exists():
            return False
        return self.runner.succeeds(["kubectl", "--kubeconfig", self.paths.admin_conf, "cluster-info"])

    def check_prerequisites(self) -> List[str]:
        logger.info("Checking prerequisites for control plane initialization...")
        warnings: List[str] = []

        if not self.runner.is_root():
            raise PrerequisiteError("This command must be run as root", remediation="re-run with sudo",
                                    component=COMPONENT, step="prerequisites")
        if not self.runner.which("kubeadm"):
            raise PrerequisiteError("kubeadm not found", remediation="run 'kubeboot install' first",
                                    component=COMPONENT, step="prerequisites")
        if not self.runner.service_active("containerd"):
            raise PrerequisiteError("Containerd is not running", remediation="run 'kubeboot install' first",
                                    component=COMPONENT, step="prerequisites")
        if not self.runner.service_enabled("kubelet"):
            raise PrerequisiteError("Kubelet is not enabled", remediation="run 'kubeboot install' first",
                                    component=COMPONENT, step="prerequisites")

        if not self.channel.available():
            message = f"Shared storage not mounted at {self.ctx.mount_path}"
            logger.warning(f"⚠️  {message}")
            logger.warning("Join command will not be saved to shared storage")
            warnings.append(message)

        logger.info("Prerequisites check completed successfully")
        return warnings

    def run_kubeadm_init(self, address: str) -> None:
        network = self.ctx.network
        logger.info("Initializing Kubernetes control plane...")
        logger.info(f"Pod network CIDR: {network.pod_cidr}")
        logger.info(f"Service CIDR: {network.service_cidr}")
        cmd = [
            "kubeadm", "init",
            f"--pod-network-cidr={network.pod_cidr}",
            f"--service-cidr={network.service_cidr}",
            f"--apiserver-advertise-address={address}",
        ]
        if network.control_plane_port != 6443:
            cmd.append(f"--apiserver-bind-port={network.control_plane_port}")
        try:
            self.runner.stream(cmd + PREFLIGHT_FLAGS)
        except BootstrapError as e:
            e.component, e.step = COMPONENT, "kubeadm-init"
            raise
        logger.info("Control plane initialized successfully")

    def setup_kubeconfig(self) -> List[str]:
        """Copy admin credentials for root and the login account."""
        logger.info("Setting up kubectl configuration...")
        admin_conf = Path(self.paths.admin_conf)
        written: List[str] = []

        targets = [(Path(self.paths.root_kubeconfig), None)]
        login = os.environ.get("SUDO_USER") or self.ctx.admin_user
        if login and login != "root":
            try:
                account = pwd.getpwnam(login)
            except KeyError:
                logger.warning(f"⚠️  User {login} not found, skipping kubeconfig setup for it")
            else:
                targets.append((Path(account.pw_dir) / ".kube" / "config", account))

        for target, account in targets:
            if self.runner.dry_run:
                logger.info(f"[DRY RUN] Would copy {admin_conf} to {target}")
                continue
            try:
                target.parent.mkdir(parents=True, exist_ok=True)
                shutil.copyfile(admin_conf, target)
                os.chmod(target, 0o600)
                if account is not None:
                    os.chown(target.parent, account.pw_uid, account.pw_gid)
                    os.chown(target, account.pw_uid, account.pw_gid)
            except OSError as e:
                raise BootstrapError(f"Cannot install kubeconfig at {target}: {e}",
                                     component=COMPONENT, step="kubeconfig") from e
            written.append(str(target))
            logger.info(f"Kubectl configured at {target}")
        return written

    def create_join_credential(self) -> Optional[JoinCredential]:
        logger.info("Generating join command for worker nodes...")
        try:
            result = self.runner.run(
                ["kubeadm", "token", "create", "--print-join-command"],
                env={"KUBECONFIG": self.paths.admin_conf},
            )
        except BootstrapError as e:
            e.component, e.step = COMPONENT, "create-token"
            raise
        if self.runner.dry_run:
            return None
        try:
            credential = JoinCredential.parse(result.stdout)
        except MalformedHandoffError as e:
            e.component, e.step = COMPONENT, "create-token"
            raise
        logger.info(f"Join command: {credential.redacted()}")
        return credential

    def publish(self, credential: JoinCredential):
        snapshot = self.runner.output(["kubectl", "--kubeconfig", self.paths.admin_conf, "cluster-info"])
        try:
            return self.channel.publish(credential, snapshot)
        except RendezvousUnavailable as e:
            logger.warning(f"⚠️  {e.message}")
            logger.warning("Join command not published; it is printed on the terminal for manual use on worker nodes")
            return None

    def report_taints(self) -> None:
        taints = self.runner.output([
            "kubectl", "--kubeconfig", self.paths.admin_conf,
            "get", "nodes", "-o", "jsonpath={.items[*].spec.taints[*].key}",
        ])
        if "node-role.kubernetes.io/control-plane" in taints:
            logger.info("Control plane node has the NoSchedule taint (workloads will not schedule here)")
            logger.info("To schedule pods on the control plane, run:")
            logger.info("  kubectl taint nodes --all node-role.kubernetes.io/control-plane-")

    def wait_for_api_server(self) -> None:
        logger.info("Waiting for control plane to be ready...")
        if self.runner.dry_run:
            return
        timeouts = self.ctx.timeouts

        def api_ready() -> bool:
            if not self.runner.succeeds(["kubectl", "--kubeconfig", self.paths.admin_conf, "cluster-info"]):
                raise TransientReadinessError("API server not responding")
            return True

        try:
            retry_with_timeout(
                api_ready,
                interval=timeouts.readiness_interval,
                attempts=timeouts.readiness_attempts,
                description="control plane",
                component=COMPONENT,
                step="control-plane-ready",
                sleep=self.sleep,
            )
        except ReadinessTimeoutError:
            logger.error("❌ Control plane failed to become ready")
            raise

        # NotReady until the network fabric is installed
        status = self.runner.output([
            "kubectl", "--kubeconfig", self.paths.admin_conf,
            "get", "nodes", "--no-headers", "-o", "custom-columns=STATUS:.status.conditions[-1:].type",
        ])
        if "Ready" not in status.split():
            logger.info("Control plane node is NotReady (expected until the network fabric is installed)")
        logger.info("Control plane is ready")

    def display_cluster_info(self) -> None:
        logger.info("=== Cluster Information ===")
        for args in (["cluster-info"], ["get", "nodes", "-o", "wide"], ["get", "pods", "-n", "kube-system"]):
            output = self.runner.output(["kubectl", "--kubeconfig", self.paths.admin_conf] + args)
            for line in output.splitlines():
                logger.info(line)


def initialize(ctx: BootstrapContext, **kwargs) -> ComponentResult:
    """Module-level entry point used by the CLI."""
    return ControlPlaneInitializer(ctx, **kwargs).initialize()
