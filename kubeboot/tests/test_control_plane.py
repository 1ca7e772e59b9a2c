from pathlib import Path

import pytest

from kubeboot.errors import BootstrapError, MalformedHandoffError, PrerequisiteError, ReadinessTimeoutError
from kubeboot.models import JoinCredential, LifecycleState
from kubeboot.modules.control_plane import ControlPlaneInitializer
from kubeboot.rendezvous import FileRendezvousChannel
from kubeboot.state import NodeStateStore

from .conftest import JOIN_COMMAND, make_context


@pytest.fixture
def leader(ctx, runner):
    """A leader node with the tooling installed and no cluster yet."""
    admin_conf = Path(ctx.paths.admin_conf)

    def kubeadm_init(cmd):
        admin_conf.write_text("apiVersion: v1\nkind: Config\n")

    runner.binaries.update(["kubeadm", "kubelet", "kubectl"])
    runner.active.add("containerd")
    runner.enabled.add("kubelet")
    runner.on("kubeadm", "init", effect=kubeadm_init)
    runner.on("kubeadm", "token", "create", "--print-join-command", out=JOIN_COMMAND + " \n")
    runner.on("kubectl", "cluster-info", out="Kubernetes control plane is running at https://10.0.0.10:6443")
    runner.on("kubectl", "get", "nodes", "jsonpath={.items[*].spec.taints[*].key}",
              out="node-role.kubernetes.io/control-plane")
    return runner


def make(ctx, runner, clock=None):
    channel = FileRendezvousChannel(ctx.rendezvous.mount_path, ctx.rendezvous.directory)
    kwargs = {"sleep": clock.sleep} if clock else {}
    return ControlPlaneInitializer(ctx, runner=runner, channel=channel,
                                   state=NodeStateStore(ctx.paths.state_file), **kwargs)


def test_fresh_leader_publishes_join_command(ctx, leader):
    result = make(ctx, leader).initialize()

    assert result.changed
    assert result.details["epoch"] == 1
    assert result.details["endpoint"] == "10.0.0.10:6443"
    assert "join_command" not in result.details

    init = next(cmd for cmd, _ in leader.calls if cmd[:2] == ["kubeadm", "init"])
    assert "--pod-network-cidr=192.168.0.0/16" in init
    assert "--service-cidr=10.96.0.0/12" in init
    assert "--apiserver-advertise-address=10.0.0.10" in init
    assert "--ignore-preflight-errors=NumCPU,Mem" in init

    channel = FileRendezvousChannel(ctx.rendezvous.mount_path)
    publication = channel.try_read()
    credential = JoinCredential.parse(publication.command)
    assert credential.token and credential.discovery_hash
    assert publication.epoch == 1
    assert "control plane is running" in channel.read_cluster_info()

    assert Path(ctx.paths.root_kubeconfig).read_text() == Path(ctx.paths.admin_conf).read_text()
    record = NodeStateStore(ctx.paths.state_file).load()
    assert record["state"] == LifecycleState.INITIALIZED.value
    assert record["role"] == "leader"
    assert record["published_epoch"] == 1


def test_second_run_is_a_no_op(ctx, leader):
    make(ctx, leader).initialize()
    leader.calls.clear()
    before = Path(ctx.paths.state_file).read_bytes()

    result = make(ctx, leader).initialize()
    assert not result.changed
    assert leader.mutating_calls == []
    assert Path(ctx.paths.state_file).read_bytes() == before
    assert FileRendezvousChannel(ctx.rendezvous.mount_path).try_read().epoch == 1


def test_prerequisites(ctx, leader):
    leader.active.discard("containerd")
    with pytest.raises(PrerequisiteError) as exc:
        make(ctx, leader).initialize()
    assert "Containerd is not running" in str(exc.value)
    assert not leader.ran("kubeadm", "init")


def test_missing_mount_is_only_a_warning(tmp_path, leader, caplog):
    ctx = make_context(tmp_path, rendezvous={"mount_path": str(tmp_path / "absent")})
    Path(ctx.paths.admin_conf).parent.mkdir(parents=True, exist_ok=True)

    result = make(ctx, leader).initialize()
    assert result.changed
    assert any("not mounted" in w for w in result.warnings)
    assert result.details["join_command"] == JOIN_COMMAND
    assert "Join command not published" in caplog.text


def test_malformed_kubeadm_output_is_never_published(ctx, leader):
    leader.on("kubeadm", "token", "create", "--print-join-command", out="kubeadm join 10.0.0.10:6443 --token x")
    with pytest.raises(MalformedHandoffError) as exc:
        make(ctx, leader).initialize()
    assert exc.value.step == "create-token"
    assert FileRendezvousChannel(ctx.rendezvous.mount_path).try_read() is None


def test_kubeadm_init_failure_names_step(ctx, leader):
    leader.on("kubeadm", "init", rc=1, out="[ERROR Port-6443]: Port 6443 is in use")
    with pytest.raises(BootstrapError) as exc:
        make(ctx, leader).initialize()
    assert exc.value.step == "kubeadm-init"
    assert "re-run: kubeboot init" in str(exc.value)


def test_api_server_never_ready(ctx, leader, clock):
    leader.on("kubectl", "cluster-info", rc=1)
    with pytest.raises(ReadinessTimeoutError) as exc:
        make(ctx, leader, clock).initialize()
    assert exc.value.attempts == ctx.timeouts.readiness_attempts
    assert clock.sleeps == [10] * (ctx.timeouts.readiness_attempts - 1)
    assert NodeStateStore(ctx.paths.state_file).current() == LifecycleState.UNINITIALIZED


def test_login_user_gets_a_private_kubeconfig(ctx, leader, monkeypatch, tmp_path):
    class Account:
        pw_dir = str(tmp_path / "home" / "ubuntu")
        pw_uid = 1000
        pw_gid = 1000

    chowned = []
    monkeypatch.setenv("SUDO_USER", "ubuntu")
    monkeypatch.setattr("kubeboot.modules.control_plane.pwd.getpwnam", lambda name: Account)
    monkeypatch.setattr("kubeboot.modules.control_plane.os.chown", lambda path, uid, gid: chowned.append(str(path)))

    result = make(ctx, leader).initialize()

    user_config = tmp_path / "home" / "ubuntu" / ".kube" / "config"
    assert str(user_config) in result.details["kubeconfigs"]
    assert oct(user_config.stat().st_mode & 0o777) == "0o600"
    assert str(user_config) in chowned
