import logging
import subprocess
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple, Union

import pytest

from kubeboot.config import ENV_VARS, BootstrapContext, set_context
from kubeboot.errors import CommandError
from kubeboot.utils import CommandRunner

TOKEN = "abcdef.0123456789abcdef"
DISCOVERY_HASH = "sha256:" + "a1" * 32
JOIN_COMMAND = f"kubeadm join 10.0.0.10:6443 --token {TOKEN} --discovery-token-ca-cert-hash {DISCOVERY_HASH}"

Response = Union[Tuple[int, str], Callable[[List[str]], Tuple[int, str]]]


class FakeRunner(CommandRunner):
    """CommandRunner that records every call and answers from a table.

    Responses are keyed by a tuple of words that must appear in the command
    in order; the longest matching key wins. Unmatched commands succeed with
    empty output.
    """

    def __init__(self, dry_run: bool = False):
        super().__init__(dry_run=dry_run)
        self.calls: List[Tuple[List[str], bool]] = []
        self.responses: Dict[Tuple[str, ...], Response] = {}
        self.binaries = set()
        self.active = set()
        self.enabled = set()
        self.root = True
        self.inputs: Dict[str, Union[str, bytes]] = {}

    def on(self, *words: str, rc: int = 0, out: str = "", effect: Optional[Callable[[List[str]], None]] = None):
        def respond(cmd):
            if effect:
                effect(cmd)
            return rc, out
        self.responses[tuple(words)] = respond
        return self

    def _respond(self, cmd: List[str]) -> Tuple[int, str]:
        best = None
        for key in self.responses:
            if _in_order(key, cmd) and (best is None or len(key) > len(best)):
                best = key
        if best is None:
            return 0, ""
        return self.responses[best](cmd)

    def run(self, cmd, *, check=True, input=None, env=None, timeout=None, mutating=True):
        self.calls.append((list(cmd), mutating))
        if self.dry_run and mutating:
            return subprocess.CompletedProcess(cmd, 0, stdout="", stderr="")
        if input is not None:
            self.inputs[cmd[0]] = input
        rc, out = self._respond(list(cmd))
        if check and rc != 0:
            raise CommandError(f"Command failed: {' '.join(cmd)} (exit code: {rc})", returncode=rc, output=out)
        return subprocess.CompletedProcess(cmd, rc, stdout=out, stderr="")

    def stream(self, cmd, *, check=True, env=None):
        self.calls.append((list(cmd), True))
        if self.dry_run:
            return 0
        rc, out = self._respond(list(cmd))
        if check and rc != 0:
            raise CommandError(f"Command failed: {cmd[0]} {cmd[1]} (exit code: {rc})", returncode=rc, output=out)
        return rc

    def which(self, name):
        return f"/usr/bin/{name}" if name in self.binaries else None

    def is_root(self):
        return self.root

    def service_active(self, name):
        return name in self.active

    def service_enabled(self, name):
        return name in self.enabled

    def write_file(self, path, content, mode=0o644):
        if not self.dry_run:
            self.calls.append((["write", str(path)], True))
        super().write_file(path, content, mode)

    @property
    def mutating_calls(self) -> List[List[str]]:
        return [cmd for cmd, mutating in self.calls if mutating]

    def ran(self, *words: str) -> bool:
        return any(_in_order(words, cmd) for cmd, _ in self.calls)


def _in_order(words, cmd) -> bool:
    it = iter(cmd)
    return all(any(w == c for c in it) for w in words)


class FakeClock:
    """Monotonic clock advanced only by sleep()."""

    def __init__(self):
        self.now = 0.0
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def make_context(tmp_path: Path, **overrides) -> BootstrapContext:
    share = tmp_path / "share"
    share.mkdir(exist_ok=True)
    etc = tmp_path / "etc"
    proc = tmp_path / "proc"
    for d in (etc, proc):
        d.mkdir(exist_ok=True)
    data = {
        "network": {"advertise_address": "10.0.0.10"},
        "rendezvous": {"mount_path": str(share)},
        "timeouts": {
            "join_poll_interval": 10,
            "join_timeout": 600,
            "readiness_interval": 10,
            "readiness_attempts": 3,
            "fabric_namespace_attempts": 3,
            "fabric_system_namespace_attempts": 3,
            "fabric_operator_timeout": 30,
            "fabric_agent_timeout": 60,
            "fabric_available_timeout": 30,
        },
        "paths": {
            "admin_conf": str(etc / "admin.conf"),
            "kubelet_conf": str(etc / "kubelet.conf"),
            "root_kubeconfig": str(tmp_path / "root" / ".kube" / "config"),
            "state_file": str(tmp_path / "state" / "node-state.json"),
            "fstab": str(etc / "fstab"),
            "modules_load_conf": str(etc / "modules-load.d" / "k8s.conf"),
            "sysctl_conf": str(etc / "sysctl.d" / "k8s.conf"),
            "proc_modules": str(proc / "modules"),
            "ip_forward": str(proc / "ip_forward"),
            "meminfo": str(proc / "meminfo"),
            "os_release": str(etc / "os-release"),
            "apt_keyring": str(etc / "keyrings" / "kubernetes-apt-keyring.gpg"),
            "apt_source": str(etc / "sources.list.d" / "kubernetes.list"),
            "kubelet_config": str(tmp_path / "kubelet" / "config.yaml"),
            "containerd_config": str(etc / "containerd" / "config.toml"),
        },
        "logging": {"directory": str(tmp_path / "logs")},
    }
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(data.get(key), dict):
            data[key] = {**data[key], **value}
        else:
            data[key] = value
    return BootstrapContext(**data)


@pytest.fixture
def ctx(tmp_path):
    return make_context(tmp_path)


@pytest.fixture
def runner():
    return FakeRunner()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for var in list(ENV_VARS) + ["KUBECONFIG_CONTENT", "SUDO_USER", "KUBEBOOT_API_KEY"]:
        monkeypatch.delenv(var, raising=False)
    yield
    set_context(None)


@pytest.fixture(autouse=True)
def reset_logging():
    yield
    root = logging.getLogger("kubeboot")
    for handler in root.handlers[:]:
        root.removeHandler(handler)
        handler.close()
    root.propagate = True
    root.setLevel(logging.NOTSET)


@pytest.fixture
def config_file(ctx, tmp_path):
    """The test context saved as a --config file."""
    path = tmp_path / "kubeboot.yaml"
    ctx.save(path)
    return str(path)
