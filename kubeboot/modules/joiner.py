"""Worker joiner: wait for the leader's credential and join the cluster."""
import logging
import time
from pathlib import Path
from typing import Callable, List, Optional

from ..config import BootstrapContext
from ..errors import (
    BootstrapError,
    JoinTimeoutError,
    MalformedHandoffError,
    PrerequisiteError,
    TransientReadinessError,
)
from ..models import ComponentResult, JoinCredential, LifecycleState, NodeRole, Publication
from ..rendezvous import FileRendezvousChannel, RendezvousChannel
from ..state import NodeStateStore
from ..utils import CommandRunner, retry_with_timeout
from .control_plane import PREFLIGHT_FLAGS

COMPONENT = "join"

logger = logging.getLogger("kubeboot.join")


class WorkerJoiner:
    """Joins this node to the cluster using the published credential."""

    def __init__(
        self,
        ctx: BootstrapContext,
        runner: Optional[CommandRunner] = None,
        channel: Optional[RendezvousChannel] = None,
        state: Optional[NodeStateStore] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ctx = ctx
        self.paths = ctx.paths
        self.runner = runner or CommandRunner(dry_run=ctx.dry_run, timeout=ctx.timeouts.command_timeout)
        self.channel = channel or FileRendezvousChannel(ctx.rendezvous.mount_path, ctx.rendezvous.directory)
        self.state = state or NodeStateStore(ctx.paths.state_file, dry_run=ctx.dry_run)
        self.sleep = sleep
        self.clock = clock

    def join(self, timeout: Optional[float] = None, poll_interval: Optional[float] = None) -> ComponentResult:
        """Join the cluster as a worker.

        Args:
            timeout: Seconds to wait for a credential (defaults to the context)
            poll_interval: Seconds between mailbox reads (defaults to the context)

        Returns:
            ComponentResult; ``changed`` is False if the node already joined

        Raises:
            PrerequisiteError: If the node or shared mount is not ready
            JoinTimeoutError: If no credential was published in time
            MalformedHandoffError: If the published text is not a join command
            CommandError: If kubeadm join fails
            ReadinessTimeoutError: If kubelet never comes up after the join
        """
        timeout = timeout if timeout is not None else self.ctx.timeouts.join_timeout
        poll_interval = poll_interval if poll_interval is not None else self.ctx.timeouts.join_poll_interval
        logger.info("Starting Kubernetes worker node join process")

        if self.is_joined():
            logger.info("✅ Node is already part of a Kubernetes cluster, skipping")
            self.state.reach(LifecycleState.JOINED, COMPONENT, role=NodeRole.WORKER)
            return ComponentResult(COMPONENT, False, "Node already joined")

        self.check_prerequisites()

        publication = self.wait_for_credential(timeout, poll_interval)
        credential = self.validate(publication)
        self.execute_join(credential)
        warnings = self.verify_registration()

        self.state.advance(
            LifecycleState.JOINED, COMPONENT,
            role=NodeRole.WORKER,
            endpoint=credential.endpoint,
            consumed_epoch=publication.epoch,
        )
        logger.info("✅ Worker node join completed successfully")
        return ComponentResult(
            COMPONENT, True, f"Joined cluster at {credential.endpoint}",
            details={"endpoint": credential.endpoint, "epoch": publication.epoch},
            warnings=warnings,
        )

    def is_joined(self) -> bool:
        if not Path(self.paths.kubelet_conf).exists():
            return False
        if not self.runner.service_active("kubelet"):
            return False
        return self.runner.succeeds(["kubectl", "--kubeconfig", self.paths.kubelet_conf, "get", "nodes"])

    def check_prerequisites(self) -> None:
        logger.info("Checking prerequisites for worker node join...")
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
            raise PrerequisiteError(
                f"Shared storage not mounted at {self.ctx.mount_path}",
                remediation="mount the shared file store, then re-run",
                component=COMPONENT, step="prerequisites",
            )
        logger.info("Prerequisites check completed successfully")

    def wait_for_credential(self, timeout: float, poll_interval: float) -> Publication:
        logger.info(f"Waiting for join command from control plane (timeout: {int(timeout)}s)...")
        publication = retry_with_timeout(
            self.channel.try_read,
            interval=poll_interval,
            timeout=timeout,
            description="join command",
            error_cls=JoinTimeoutError,
            component=COMPONENT,
            step="wait-for-join-command",
            sleep=self.sleep,
            clock=self.clock,
        )
        logger.info(f"Join command found (epoch {publication.epoch})")
        return publication

    def validate(self, publication: Publication) -> JoinCredential:
        logger.info("Validating join command...")
        try:
            credential = JoinCredential.parse(publication.command)
        except MalformedHandoffError as e:
            e.component, e.step = COMPONENT, "validate-join-command"
            logger.error(f"❌ {e.message}")
            raise
        logger.info("Join command validated successfully")
        return credential

    def execute_join(self, credential: JoinCredential) -> None:
        logger.info(f"Joining Kubernetes cluster: {credential.redacted()}")
        try:
            self.runner.stream(credential.to_argv() + PREFLIGHT_FLAGS)
        except BootstrapError as e:
            e.component, e.step = COMPONENT, "kubeadm-join"
            raise
        logger.info("Successfully joined the cluster")

    def verify_registration(self) -> List[str]:
        logger.info("Verifying node registration...")
        if self.runner.dry_run:
            return []
        timeouts = self.ctx.timeouts

        def kubelet_running() -> bool:
            if not self.runner.service_active("kubelet"):
                raise TransientReadinessError("kubelet is not active")
            return True

        retry_with_timeout(
            kubelet_running,
            interval=timeouts.readiness_interval,
            attempts=timeouts.readiness_attempts,
            description="kubelet",
            component=COMPONENT,
            step="kubelet-ready",
            sleep=self.sleep,
            clock=self.clock,
        )
        logger.info("Kubelet is running")

        if not Path(self.paths.kubelet_conf).exists():
            raise BootstrapError("Kubelet configuration not found", component=COMPONENT, step="verify-registration")
        logger.info("Kubelet configuration found")

        if self.runner.succeeds(["kubectl", "--kubeconfig", self.paths.kubelet_conf, "get", "nodes"]):
            logger.info("Node can communicate with API server")
            return []
        message = "Cannot verify API server connectivity (this may be normal)"
        logger.warning(f"⚠️  {message}")
        return [message]


def join(
    ctx: BootstrapContext,
    timeout: Optional[float] = None,
    poll_interval: Optional[float] = None,
    **kwargs,
) -> ComponentResult:
    """Module-level entry point used by the CLI."""
    return WorkerJoiner(ctx, **kwargs).join(timeout, poll_interval)
