"""Bootstrap configuration and the context object passed to every component.

Configuration is loaded from multiple sources with the following precedence:
1. Explicitly passed overrides (CLI options)
2. Environment variables (a ``.env`` file is loaded first if present)
3. Configuration file
4. Default values
"""
import ipaddress
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional, Tuple, Union

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator, model_validator

logger = logging.getLogger("kubeboot.config")

# Load environment variables from .env file if it exists
load_dotenv()

DEFAULT_CONFIG_PATHS = [
    Path("/etc/kubeboot/config.yaml"),
    Path("~/.config/kubeboot/config.yaml"),
    Path("kubeboot.yaml"),
]

REDACT_KEYS: Tuple[str, ...] = ("token", "password", "secret", "api_key")


class NetworkConfig(BaseModel):
    """Cluster address ranges and the control plane endpoint."""
    pod_cidr: str = Field(default="192.168.0.0/16", description="Pod network range")
    service_cidr: str = Field(default="10.96.0.0/12", description="Service network range")
    advertise_address: Optional[str] = Field(
        default=None,
        description="API server advertise address (derived from the primary interface if unset)"
    )
    control_plane_port: int = Field(default=6443, description="API server port")

    @field_validator('pod_cidr', 'service_cidr')
    @classmethod
    def validate_cidr(cls, v: str) -> str:
        ipaddress.ip_network(v, strict=False)
        return v

    @field_validator('advertise_address')
    @classmethod
    def validate_address(cls, v: Optional[str]) -> Optional[str]:
        if v:
            ipaddress.ip_address(v)
        return v

    @model_validator(mode='after')
    def check_overlap(self) -> 'NetworkConfig':
        pods = ipaddress.ip_network(self.pod_cidr, strict=False)
        services = ipaddress.ip_network(self.service_cidr, strict=False)
        if pods.version == services.version and pods.overlaps(services):
            raise ValueError(f"pod_cidr {self.pod_cidr} overlaps service_cidr {self.service_cidr}")
        return self


class VersionConfig(BaseModel):
    """Versions of the pieces being installed."""
    kubernetes: str = Field(default="1.30", description="Kubernetes minor version (pkgs.k8s.io channel)")
    fabric: str = Field(default="v3.27.0", description="Calico release")


class FabricConfig(BaseModel):
    """Desired overlay network configuration."""
    encapsulation: str = Field(default="VXLANCrossSubnet")
    mtu: int = Field(default=1440, gt=0)
    block_size: int = Field(default=26, ge=20, le=32)
    operator_manifest_url: str = Field(
        default="https://raw.githubusercontent.com/projectcalico/calico/{version}/manifests/tigera-operator.yaml"
    )

    @field_validator('encapsulation')
    @classmethod
    def validate_encapsulation(cls, v: str) -> str:
        allowed = ['IPIP', 'IPIPCrossSubnet', 'VXLAN', 'VXLANCrossSubnet', 'None']
        if v not in allowed:
            raise ValueError(f"encapsulation must be one of {allowed}")
        return v

    def manifest_url(self, version: str) -> str:
        return self.operator_manifest_url.format(version=version)


class RendezvousConfig(BaseModel):
    """Where the shared mailbox lives."""
    mount_path: str = Field(default="/mnt/cluster-share", description="Shared storage mount root")
    directory: str = Field(default="k8s-join-token", description="Mailbox directory under the mount")


class TimeoutConfig(BaseModel):
    """Polling intervals and budgets, in seconds."""
    join_poll_interval: float = Field(default=10, gt=0)
    join_timeout: float = Field(default=600, gt=0)
    readiness_interval: float = Field(default=10, gt=0)
    readiness_attempts: int = Field(default=30, gt=0)
    fabric_namespace_attempts: int = Field(default=30, gt=0)
    fabric_system_namespace_attempts: int = Field(default=60, gt=0)
    fabric_operator_timeout: float = Field(default=300, gt=0)
    fabric_agent_timeout: float = Field(default=600, gt=0)
    fabric_available_timeout: float = Field(default=300, gt=0)
    command_timeout: Optional[float] = Field(default=None, description="Per-command timeout (None waits)")


class HostPaths(BaseModel):
    """Host files read or written by the components."""
    admin_conf: str = "/etc/kubernetes/admin.conf"
    kubelet_conf: str = "/etc/kubernetes/kubelet.conf"
    root_kubeconfig: str = "/root/.kube/config"
    state_file: str = "/var/lib/kubeboot/node-state.json"
    fstab: str = "/etc/fstab"
    modules_load_conf: str = "/etc/modules-load.d/k8s.conf"
    sysctl_conf: str = "/etc/sysctl.d/k8s.conf"
    proc_modules: str = "/proc/modules"
    ip_forward: str = "/proc/sys/net/ipv4/ip_forward"
    meminfo: str = "/proc/meminfo"
    os_release: str = "/etc/os-release"
    apt_keyring: str = "/etc/apt/keyrings/kubernetes-apt-keyring.gpg"
    apt_source: str = "/etc/apt/sources.list.d/kubernetes.list"
    kubelet_config: str = "/var/lib/kubelet/config.yaml"
    containerd_config: str = "/etc/containerd/config.toml"


class LoggingConfig(BaseModel):
    """Logging configuration."""
    level: str = Field(default="INFO", description="Logging level")
    directory: str = Field(default="/var/log/kubernetes", description="Per-component log files go here")
    max_size_mb: int = Field(default=100, description="Maximum log file size in MB before rotation")
    backup_count: int = Field(default=5, description="Number of backup log files to keep")


class BootstrapContext(BaseModel):
    """Everything a component needs, passed explicitly into every call."""
    network: NetworkConfig = Field(default_factory=NetworkConfig)
    versions: VersionConfig = Field(default_factory=VersionConfig)
    fabric: FabricConfig = Field(default_factory=FabricConfig)
    rendezvous: RendezvousConfig = Field(default_factory=RendezvousConfig)
    timeouts: TimeoutConfig = Field(default_factory=TimeoutConfig)
    paths: HostPaths = Field(default_factory=HostPaths)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    admin_user: Optional[str] = Field(default=None, description="Login account that also gets a kubeconfig")
    kubeconfig: Optional[str] = Field(default=None, description="Kubeconfig used by read-only queries")
    dry_run: bool = False

    model_config = {"extra": "ignore"}

    @property
    def credentials_path(self) -> str:
        return self.kubeconfig or self.paths.admin_conf

    @property
    def mount_path(self) -> str:
        return self.rendezvous.mount_path

    @property
    def control_plane_endpoint(self) -> Optional[str]:
        if not self.network.advertise_address:
            return None
        return f"{self.network.advertise_address}:{self.network.control_plane_port}"

    @classmethod
    def load(
        cls,
        config_path: Optional[Union[str, Path]] = None,
        overrides: Optional[Dict[str, Any]] = None,
    ) -> 'BootstrapContext':
        """Load configuration from file, environment variables and overrides."""
        config_data: Dict[str, Any] = {}

        if config_path:
            path = Path(config_path).expanduser().absolute()
            if not path.exists():
                raise FileNotFoundError(f"Config file not found: {path}")
            config_data = cls._load_config_file(path)
        else:
            for path in DEFAULT_CONFIG_PATHS:
                path = path.expanduser().absolute()
                if path.exists():
                    config_data = cls._load_config_file(path)
                    logger.debug(f"Loaded configuration from {path}")
                    break

        config_data = merge_dicts(config_data, env_overrides())
        if overrides:
            config_data = merge_dicts(config_data, prune_none(overrides))
        return cls(**config_data)

    @classmethod
    def _load_config_file(cls, path: Path) -> Dict[str, Any]:
        """Load configuration from a YAML file."""
        try:
            with open(path, 'r') as f:
                return yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            logger.warning(f"Failed to load config from {path}: {e}")
            return {}

    def save(self, path: Union[str, Path]) -> None:
        """Save configuration to a file."""
        path = Path(path).expanduser().absolute()
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, 'w') as f:
            yaml.safe_dump(self.model_dump(exclude_none=True), f, default_flow_style=False, sort_keys=False)


# environment variable -> (section, field); section None means a top-level field
ENV_VARS: Dict[str, Tuple[Optional[str], str]] = {
    "K8S_POD_CIDR": ("network", "pod_cidr"),
    "K8S_SERVICE_CIDR": ("network", "service_cidr"),
    "K8S_API_SERVER_ADDRESS": ("network", "advertise_address"),
    "K8S_VERSION": ("versions", "kubernetes"),
    "CALICO_VERSION": ("versions", "fabric"),
    "FILE_SHARE_MOUNT": ("rendezvous", "mount_path"),
    "MAX_WAIT_SECONDS": ("timeouts", "join_timeout"),
    "KUBEBOOT_JOIN_POLL_INTERVAL": ("timeouts", "join_poll_interval"),
    "KUBEBOOT_READINESS_INTERVAL": ("timeouts", "readiness_interval"),
    "KUBEBOOT_READINESS_ATTEMPTS": ("timeouts", "readiness_attempts"),
    "KUBEBOOT_FABRIC_MTU": ("fabric", "mtu"),
    "KUBEBOOT_FABRIC_ENCAPSULATION": ("fabric", "encapsulation"),
    "KUBEBOOT_LOG_LEVEL": ("logging", "level"),
    "KUBEBOOT_LOG_DIR": ("logging", "directory"),
    "KUBEBOOT_STATE_FILE": ("paths", "state_file"),
    "KUBEBOOT_ADMIN_USER": (None, "admin_user"),
    "KUBECONFIG": (None, "kubeconfig"),
}


def env_overrides(environ: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
    """Collect configuration overrides from environment variables."""
    environ = os.environ if environ is None else environ
    data: Dict[str, Any] = {}
    for var, (section, key) in ENV_VARS.items():
        value = environ.get(var)
        if value in (None, ""):
            continue
        if section is None:
            data[key] = value
        else:
            data.setdefault(section, {})[key] = value
    return data


def merge_dicts(base: Dict[Any, Any], override: Dict[Any, Any]) -> Dict[Any, Any]:
    """Recursively merge two dictionaries, with override taking precedence."""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = merge_dicts(result[key], value)
        else:
            result[key] = value
    return result


def prune_none(data: Dict[str, Any]) -> Dict[str, Any]:
    """Drop unset CLI options so they don't mask file or env values."""
    pruned: Dict[str, Any] = {}
    for key, value in data.items():
        if isinstance(value, dict):
            nested = prune_none(value)
            if nested:
                pruned[key] = nested
        elif value is not None:
            pruned[key] = value
    return pruned


def redact(data: Any) -> Any:
    """Recursively redact sensitive values from dictionaries and lists."""
    if isinstance(data, dict):
        return {
            k: "[REDACTED]" if any(key in str(k).lower() for key in REDACT_KEYS) else redact(v)
            for k, v in data.items()
        }
    if isinstance(data, (list, tuple)):
        return [redact(item) for item in data]
    return data


# Global configuration instance
_context: Optional[BootstrapContext] = None


def get_context(config_path: Optional[Union[str, Path]] = None) -> BootstrapContext:
    """Get or create the global context instance."""
    global _context
    if _context is None:
        _context = BootstrapContext.load(config_path)
    return _context


def set_context(context: Optional[BootstrapContext]) -> None:
    """Set (or clear, with None) the global context instance."""
    global _context
    _context = context
