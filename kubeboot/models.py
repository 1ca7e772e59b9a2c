"""Data models for cluster bootstrap."""
import re
import shlex
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from .errors import MalformedHandoffError


class NodeRole(str, Enum):
    """Node roles in the cluster."""
    LEADER = 'leader'
    WORKER = 'worker'


class LifecycleState(str, Enum):
    """Lifecycle of a node, in the order components move it forward."""
    UNINITIALIZED = 'uninitialized'
    INSTALLED = 'installed'
    INITIALIZED = 'initialized'
    JOINED = 'joined'
    NETWORKED = 'networked'
    READY = 'ready'

    @property
    def rank(self) -> int:
        # initialized (leader) and joined (worker) are the same step on different paths
        return _STATE_RANK[self]


_STATE_RANK = {
    LifecycleState.UNINITIALIZED: 0,
    LifecycleState.INSTALLED: 1,
    LifecycleState.INITIALIZED: 2,
    LifecycleState.JOINED: 2,
    LifecycleState.NETWORKED: 3,
    LifecycleState.READY: 4,
}


@dataclass
class Node:
    """Represents a node taking part in the bootstrap."""
    hostname: str
    role: NodeRole
    address: str
    state: LifecycleState = LifecycleState.UNINITIALIZED


TOKEN_RE = re.compile(r'^[a-z0-9]{6}\.[a-z0-9]{16}$')
DISCOVERY_HASH_RE = re.compile(r'^sha256:[a-f0-9]{64}$')
ENDPOINT_RE = re.compile(r'^[A-Za-z0-9.\-]+:\d{1,5}$|^\[[0-9A-Fa-f:]+\]:\d{1,5}$')
FORBIDDEN_CHARS = set(';|&`$<>(){}\\\'"*?!#~')

TOKEN_FLAG = '--token'
HASH_FLAG = '--discovery-token-ca-cert-hash'


@dataclass(frozen=True)
class JoinCredential:
    """A join token, the CA discovery hash and the endpoint they are valid for."""
    token: str
    discovery_hash: str
    endpoint: str

    @classmethod
    def parse(cls, command: str) -> 'JoinCredential':
        """Parse a ``kubeadm join`` command, rejecting anything off-grammar.

        The accepted grammar is exactly::

            kubeadm join <host>:<port> --token <token> --discovery-token-ca-cert-hash sha256:<hex>

        with the two flags in any order, each given once, either as
        ``--flag value`` or ``--flag=value``.

        Args:
            command: Raw text read from the rendezvous channel

        Returns:
            JoinCredential built from the command

        Raises:
            MalformedHandoffError: If the text is not of the accepted grammar
        """
        if command is None or not command.strip():
            raise MalformedHandoffError("Join command is empty")

        text = command.strip()
        if '\n' in text or '\r' in text:
            raise MalformedHandoffError("Join command must be a single line")

        bad = sorted(set(text) & FORBIDDEN_CHARS)
        if bad:
            raise MalformedHandoffError(
                f"Join command contains disallowed characters: {''.join(bad)}"
            )

        try:
            argv = shlex.split(text)
        except ValueError as e:
            raise MalformedHandoffError(f"Join command is not parseable: {e}") from e

        if argv[:2] != ['kubeadm', 'join']:
            raise MalformedHandoffError("Invalid join command format (must start with 'kubeadm join')")

        if len(argv) < 3 or argv[2].startswith('-'):
            raise MalformedHandoffError("Join command missing control plane endpoint")
        endpoint = argv[2]
        if not ENDPOINT_RE.match(endpoint):
            raise MalformedHandoffError(f"Invalid control plane endpoint: {endpoint}")

        flags: Dict[str, str] = {}
        rest = argv[3:]
        i = 0
        while i < len(rest):
            arg = rest[i]
            name, has_value, value = arg.partition('=')
            if name not in (TOKEN_FLAG, HASH_FLAG):
                raise MalformedHandoffError(f"Join command has unexpected argument: {name}")
            if has_value:
                i += 1
            else:
                if i + 1 >= len(rest):
                    raise MalformedHandoffError(f"Join command flag {name} has no value")
                value = rest[i + 1]
                i += 2
            if name in flags:
                raise MalformedHandoffError(f"Join command repeats {name}")
            flags[name] = value

        if TOKEN_FLAG not in flags:
            raise MalformedHandoffError("Join command missing token parameter")
        if HASH_FLAG not in flags:
            raise MalformedHandoffError("Join command missing discovery-token-ca-cert-hash parameter")
        if not TOKEN_RE.match(flags[TOKEN_FLAG]):
            raise MalformedHandoffError("Join command token is not a valid bootstrap token")
        if not DISCOVERY_HASH_RE.match(flags[HASH_FLAG]):
            raise MalformedHandoffError("Join command discovery hash is not a sha256 pin")

        return cls(token=flags[TOKEN_FLAG], discovery_hash=flags[HASH_FLAG], endpoint=endpoint)

    def to_argv(self) -> List[str]:
        return [
            'kubeadm', 'join', self.endpoint,
            TOKEN_FLAG, self.token,
            HASH_FLAG, self.discovery_hash,
        ]

    def to_command(self) -> str:
        return ' '.join(self.to_argv())

    def redacted(self) -> str:
        """The join command with the secret half of the token masked."""
        token_id = self.token.split('.', 1)[0]
        return (
            f"kubeadm join {self.endpoint} {TOKEN_FLAG} {token_id}.[REDACTED] "
            f"{HASH_FLAG} {self.discovery_hash}"
        )


@dataclass
class Publication:
    """What the rendezvous channel currently holds."""
    command: str
    epoch: int = 0
    published_at: Optional[str] = None


@dataclass
class ComponentResult:
    """Outcome of a component run. ``changed`` is False on an idempotent no-op."""
    component: str
    changed: bool
    message: str
    details: Dict[str, Any] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)


@dataclass
class NamespacePods:
    """Pod readiness for one namespace."""
    namespace: str
    total: int = 0
    running: int = 0
    pending: int = 0
    failed: int = 0

    @property
    def ratio(self) -> str:
        return f"{self.running}/{self.total}"


@dataclass
class ClusterReport:
    """Aggregate readiness computed on demand from live queries."""
    server_version: Optional[str] = None
    total_nodes: int = 0
    ready_nodes: int = 0
    control_plane_nodes: int = 0
    not_ready: List[str] = field(default_factory=list)
    namespaces: Dict[str, NamespacePods] = field(default_factory=dict)
    fabric_installed: bool = False
    fabric_available: Optional[bool] = None
    dns_ready_pods: int = 0
    dns_total_pods: int = 0
    storage_classes: List[str] = field(default_factory=list)
    persistent_volumes: int = 0
    persistent_volume_claims: int = 0
    services: int = 0
    metrics_available: bool = False
    node_metrics: Dict[str, Dict[str, str]] = field(default_factory=dict)
    issues: List[str] = field(default_factory=list)
    unchecked: List[str] = field(default_factory=list)

    @property
    def worker_nodes(self) -> int:
        return self.total_nodes - self.control_plane_nodes

    @property
    def total_pods(self) -> int:
        return sum(ns.total for ns in self.namespaces.values())

    @property
    def running_pods(self) -> int:
        return sum(ns.running for ns in self.namespaces.values())

    @property
    def node_ratio(self) -> str:
        return f"{self.ready_nodes}/{self.total_nodes}"

    @property
    def pod_ratio(self) -> str:
        return f"{self.running_pods}/{self.total_pods}"

    @property
    def status(self) -> str:
        # a section that could not be read leaves the counts unproven
        if (self.total_nodes > 0 and self.ready_nodes == self.total_nodes
                and self.running_pods == self.total_pods and not self.unchecked):
            return 'PASS'
        return 'WARN'

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['status'] = self.status
        data['node_ratio'] = self.node_ratio
        data['pod_ratio'] = self.pod_ratio
        data['worker_nodes'] = self.worker_nodes
        return data
