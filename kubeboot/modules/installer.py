"""Node installer: container runtime, kubelet, kubeadm and kubectl.

Runs on every node independently and is safe to run repeatedly: if the
tools are present at the desired version nothing is touched.
"""
import logging
import platform
import re
import shutil
from pathlib import Path
from typing import Dict, List, Optional

import requests
import yaml

from ..config import BootstrapContext
from ..errors import BootstrapError, PrerequisiteError
from ..models import ComponentResult, LifecycleState
from ..state import NodeStateStore
from ..utils import CommandRunner

COMPONENT = "install"

logger = logging.getLogger("kubeboot.install")

REQUIRED_BINARIES = ("kubeadm", "kubelet", "kubectl")
PACKAGES = ["kubelet", "kubeadm", "kubectl"]
APT_PREREQUISITES = ["apt-transport-https", "ca-certificates", "curl", "gpg"]
KERNEL_MODULES = ["overlay", "br_netfilter"]
SYSCTL_PARAMS = {
    "net.bridge.bridge-nf-call-iptables": "1",
    "net.bridge.bridge-nf-call-ip6tables": "1",
    "net.ipv4.ip_forward": "1",
}
SUPPORTED_ARCHES = ("amd64", "arm64")
MIN_DISK_BYTES = 10 * 1024 ** 3
MIN_MEMORY_KB = 2 * 1024 * 1024
REPO_URL = "https://pkgs.k8s.io/core:/stable:/v{version}/deb/"


class NodeInstaller:
    """Ensures the cluster agent runtime and CLI tooling are installed."""

    def __init__(
        self,
        ctx: BootstrapContext,
        runner: Optional[CommandRunner] = None,
        state: Optional[NodeStateStore] = None,
        http: Optional[requests.Session] = None,
    ):
        self.ctx = ctx
        self.paths = ctx.paths
        self.runner = runner or CommandRunner(dry_run=ctx.dry_run, timeout=ctx.timeouts.command_timeout)
        self.state = state or NodeStateStore(ctx.paths.state_file, dry_run=ctx.dry_run)
        self.http = http or requests.Session()

    def ensure_installed(self, desired_version: Optional[str] = None) -> ComponentResult:
        """Install the Kubernetes node tooling unless it is already there.

        Args:
            desired_version: Kubernetes minor version, e.g. '1.30'

        Returns:
            ComponentResult; ``changed`` is False when nothing had to be done

        Raises:
            BootstrapError: If any installation step fails
        """
        version = desired_version or self.ctx.versions.kubernetes
        logger.info(f"Starting Kubernetes {version} installation")

        installed = self.installed_version()
        if installed and version_matches(installed, version):
            logger.info(f"✅ Desired version {version} is already installed ({installed}), skipping installation")
            self.state.reach(LifecycleState.INSTALLED, COMPONENT, kubernetes_version=installed)
            return ComponentResult(COMPONENT, False, f"Kubernetes {installed} already installed",
                                   details={"version": installed})
        if installed:
            logger.warning(
                f"⚠️  Installed version {installed} differs from desired version {version}; reinstalling"
            )

        warnings = self.check_prerequisites()

        steps = [
            ("disable-swap", self.disable_swap),
            ("kernel-modules", self.load_kernel_modules),
            ("sysctl", self.configure_sysctl),
            ("container-runtime", self.ensure_container_runtime),
            ("package-repository", lambda: self.add_package_repository(version)),
            ("packages", self.install_packages),
            ("kubelet-config", self.configure_kubelet),
            ("enable-kubelet", self.enable_kubelet),
            ("verify", self.verify_installation),
        ]
        for name, step in steps:
            try:
                result = step()
            except BootstrapError as e:
                e.component = e.component or COMPONENT
                e.step = e.step or name
                raise
            except OSError as e:
                raise BootstrapError(f"{e}", component=COMPONENT, step=name) from e
            if isinstance(result, str):
                warnings.append(result)

        final_version = self.installed_version() or version
        self.state.advance(LifecycleState.INSTALLED, COMPONENT, kubernetes_version=final_version)
        logger.info(f"✅ Kubernetes installation completed successfully ({final_version})")
        return ComponentResult(COMPONENT, True, f"Kubernetes {final_version} installed",
                               details={"version": final_version}, warnings=warnings)

    def installed_version(self) -> Optional[str]:
        """Version reported by kubeadm if all three binaries are present."""
        if not all(self.runner.which(b) for b in REQUIRED_BINARIES):
            logger.info("Kubernetes is not installed")
            return None
        installed = self.runner.output(["kubeadm", "version", "-o", "short"])
        logger.info(f"Kubernetes is already installed: {installed or 'unknown version'}")
        return installed or None

    def check_prerequisites(self) -> List[str]:
        """Verify system prerequisites; returns non-fatal warnings."""
        logger.info("Checking prerequisites for Kubernetes installation...")
        warnings: List[str] = []

        if not self.runner.is_root():
            raise PrerequisiteError("This command must be run as root",
                                    remediation="re-run with sudo", component=COMPONENT, step="prerequisites")

        os_release = Path(self.paths.os_release)
        if not os_release.exists() or "ubuntu" not in os_release.read_text().lower():
            raise PrerequisiteError("This installer is designed for Ubuntu systems",
                                    component=COMPONENT, step="prerequisites")

        arch = self.runner.output(["dpkg", "--print-architecture"]) or normalize_arch(platform.machine())
        if arch not in SUPPORTED_ARCHES:
            raise PrerequisiteError(f"Unsupported architecture: {arch}", component=COMPONENT, step="prerequisites")

        free = shutil.disk_usage("/").free
        if free < MIN_DISK_BYTES:
            warnings.append(f"Low disk space: {free // 1024 ** 3}GB available")

        available_kb = read_meminfo(self.paths.meminfo).get("MemAvailable")
        if available_kb is not None and available_kb < MIN_MEMORY_KB:
            warnings.append(f"Low memory: {available_kb // 1024}MB available")

        for warning in warnings:
            logger.warning(f"⚠️  {warning}")
        logger.info("Prerequisites check completed successfully")
        return warnings

    def disable_swap(self) -> None:
        logger.info("Disabling swap...")
        if self.runner.output(["swapon", "--show"]):
            logger.info("Swap is currently enabled, disabling...")
            self.runner.run(["swapoff", "-a"])
        else:
            logger.info("Swap is already disabled")

        fstab = Path(self.paths.fstab)
        if fstab.exists():
            content = fstab.read_text()
            updated = comment_swap_entries(content)
            if updated != content:
                self.runner.write_file(fstab, updated, 0o644)
                logger.info("Swap entries commented out in fstab")

    def load_kernel_modules(self) -> None:
        logger.info("Loading required kernel modules...")
        self.runner.write_file(
            self.paths.modules_load_conf,
            "# Kubernetes required kernel modules\n" + "\n".join(KERNEL_MODULES) + "\n",
        )
        for module in KERNEL_MODULES:
            self.runner.run(["modprobe", module])

        if self.runner.dry_run:
            return
        loaded = loaded_modules(self.paths.proc_modules)
        missing = [m for m in KERNEL_MODULES if m not in loaded]
        if missing:
            raise BootstrapError(f"Failed to verify kernel modules: {', '.join(missing)}",
                                 component=COMPONENT, step="kernel-modules")
        logger.info("Kernel modules loaded successfully")

    def configure_sysctl(self) -> None:
        logger.info("Configuring sysctl parameters...")
        lines = ["# Kubernetes networking parameters"]
        lines += [f"{key} = {value}" for key, value in SYSCTL_PARAMS.items()]
        self.runner.write_file(self.paths.sysctl_conf, "\n".join(lines) + "\n")
        self.runner.run(["sysctl", "--system"])

        if self.runner.dry_run:
            return
        if not ip_forward_enabled(self.paths.ip_forward):
            raise BootstrapError("Failed to verify sysctl parameters (ip_forward is off)",
                                 component=COMPONENT, step="sysctl")
        logger.info("Sysctl parameters configured successfully")

    def ensure_container_runtime(self) -> None:
        logger.info("Ensuring containerd is installed...")
        if not self.runner.which("containerd"):
            self.runner.run(["apt-get", "update", "-qq"])
            self.runner.run(["apt-get", "install", "-y", "-qq", "containerd"])

        config_path = Path(self.paths.containerd_config)
        if config_path.exists():
            current = config_path.read_text()
        else:
            current = self.runner.output(["containerd", "config", "default"])
        updated = enable_systemd_cgroup(current)
        if updated and updated != (config_path.read_text() if config_path.exists() else None):
            self.runner.write_file(config_path, updated, 0o644)
            self.runner.run(["systemctl", "restart", "containerd"])
        self.runner.run(["systemctl", "enable", "--now", "containerd"])
        logger.info("Containerd configured successfully")

    def add_package_repository(self, version: str) -> None:
        logger.info("Adding Kubernetes APT repository...")
        self.runner.run(["apt-get", "update", "-qq"])
        self.runner.run(["apt-get", "install", "-y", "-qq"] + APT_PREREQUISITES)

        repo = REPO_URL.format(version=version)
        key_url = f"{repo}Release.key"
        logger.info(f"Downloading Kubernetes GPG key for version {version}...")
        try:
            response = self.http.get(key_url, timeout=30)
            response.raise_for_status()
        except requests.RequestException as e:
            raise BootstrapError(f"Failed to download Kubernetes GPG key from {key_url}: {e}",
                                 component=COMPONENT, step="package-repository") from e

        Path(self.paths.apt_keyring).parent.mkdir(parents=True, exist_ok=True)
        self.runner.run(
            ["gpg", "--dearmor", "--yes", "-o", self.paths.apt_keyring],
            input=response.content,
        )
        if not self.runner.dry_run and not Path(self.paths.apt_keyring).exists():
            raise BootstrapError("Failed to install Kubernetes GPG key",
                                 component=COMPONENT, step="package-repository")

        self.runner.write_file(
            self.paths.apt_source,
            f"deb [signed-by={self.paths.apt_keyring}] {repo} /\n",
        )
        self.runner.run(["apt-get", "update", "-qq"])
        logger.info("Kubernetes repository added successfully")

    def install_packages(self) -> None:
        logger.info("Installing Kubernetes packages...")
        # an earlier install may have held the packages at another version
        self.runner.run(["apt-mark", "unhold"] + PACKAGES, check=False)
        self.runner.run(["apt-get", "install", "-y", "-qq", "--allow-change-held-packages"] + PACKAGES)
        self.runner.run(["apt-mark", "hold"] + PACKAGES)
        logger.info("Kubernetes packages marked to hold version")

    def configure_kubelet(self) -> None:
        logger.info("Configuring kubelet...")
        kubelet_config = {
            "apiVersion": "kubelet.config.k8s.io/v1beta1",
            "kind": "KubeletConfiguration",
            "cgroupDriver": "systemd",
        }
        self.runner.write_file(
            self.paths.kubelet_config,
            yaml.safe_dump(kubelet_config, default_flow_style=False, sort_keys=False),
        )
        self.runner.run(["systemctl", "daemon-reload"])

    def enable_kubelet(self) -> Optional[str]:
        self.runner.run(["systemctl", "enable", "kubelet"])
        started = self.runner.run(["systemctl", "start", "kubelet"], check=False)
        if started.returncode != 0:
            message = "Kubelet failed to start (expected before cluster init)"
            logger.warning(f"⚠️  {message}")
            return message
        return None

    def verify_installation(self) -> None:
        logger.info("Verifying Kubernetes installation...")
        if self.runner.dry_run:
            return
        for binary in REQUIRED_BINARIES:
            if not self.runner.which(binary):
                raise BootstrapError(f"Command not found: {binary}", component=COMPONENT, step="verify")
        if not self.runner.service_enabled("kubelet"):
            raise BootstrapError("Kubelet service is not enabled", component=COMPONENT, step="verify")
        if "br_netfilter" not in loaded_modules(self.paths.proc_modules):
            raise BootstrapError("br_netfilter module not loaded", component=COMPONENT, step="verify")
        if not ip_forward_enabled(self.paths.ip_forward):
            raise BootstrapError("IP forwarding not enabled", component=COMPONENT, step="verify")

        versions = {
            "kubeadm": self.runner.output(["kubeadm", "version", "-o", "short"]),
            "kubelet": self.runner.output(["kubelet", "--version"]).replace("Kubernetes ", ""),
            "kubectl": kubectl_client_version(self.runner),
        }
        logger.info("Installed versions:")
        for name, found in versions.items():
            logger.info(f"  - {name}: {found or 'unknown'}")
        logger.info("Kubernetes installation verified successfully")


def version_matches(installed: str, desired: str) -> bool:
    """'v1.30.4' matches '1.30' and '1.30.4' but not '1.3' or '1.31'."""
    installed = installed.strip().lstrip("v")
    desired = desired.strip().lstrip("v")
    return installed == desired or installed.startswith(desired + ".")


def normalize_arch(machine: str) -> str:
    return {"x86_64": "amd64", "aarch64": "arm64"}.get(machine, machine)


def comment_swap_entries(fstab: str) -> str:
    """Comment out active swap lines in an fstab body."""
    lines = []
    for line in fstab.splitlines(keepends=True):
        fields = line.split()
        if fields and not line.lstrip().startswith("#") and len(fields) >= 3 and fields[2] == "swap":
            line = "#" + line
        lines.append(line)
    return "".join(lines)


def enable_systemd_cgroup(config_toml: str) -> str:
    return re.sub(r"SystemdCgroup\s*=\s*false", "SystemdCgroup = true", config_toml)


def loaded_modules(proc_modules: str) -> List[str]:
    try:
        with open(proc_modules) as f:
            return [line.split()[0] for line in f if line.strip()]
    except OSError:
        return []


def ip_forward_enabled(path: str) -> bool:
    try:
        return Path(path).read_text().strip() == "1"
    except OSError:
        return False


def read_meminfo(path: str) -> Dict[str, int]:
    values: Dict[str, int] = {}
    try:
        with open(path) as f:
            for line in f:
                key, _, rest = line.partition(":")
                number = rest.split()
                if number and number[0].isdigit():
                    values[key.strip()] = int(number[0])
    except OSError:
        pass
    return values


def kubectl_client_version(runner: CommandRunner) -> str:
    output = runner.output(["kubectl", "version", "--client", "-o", "yaml"])
    try:
        data = yaml.safe_load(output) or {}
    except yaml.YAMLError:
        return ""
    return data.get("clientVersion", {}).get("gitVersion", "")


def ensure_installed(ctx: BootstrapContext, desired_version: Optional[str] = None, **kwargs) -> ComponentResult:
    """Module-level entry point used by the CLI."""
    return NodeInstaller(ctx, **kwargs).ensure_installed(desired_version)
