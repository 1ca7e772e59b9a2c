import pytest
import yaml
from pydantic import ValidationError

from kubeboot.config import BootstrapContext, env_overrides, merge_dicts, prune_none, redact


def test_defaults():
    ctx = BootstrapContext()
    assert ctx.network.pod_cidr == "192.168.0.0/16"
    assert ctx.network.service_cidr == "10.96.0.0/12"
    assert ctx.versions.kubernetes == "1.30"
    assert ctx.versions.fabric == "v3.27.0"
    assert ctx.timeouts.join_poll_interval == 10
    assert ctx.timeouts.join_timeout == 600
    assert ctx.timeouts.readiness_attempts == 30
    assert ctx.credentials_path == "/etc/kubernetes/admin.conf"
    assert ctx.mount_path == "/mnt/cluster-share"
    assert ctx.control_plane_endpoint is None


def test_env_overrides_map_to_sections():
    data = env_overrides({
        "K8S_POD_CIDR": "10.244.0.0/16",
        "FILE_SHARE_MOUNT": "/mnt/share",
        "MAX_WAIT_SECONDS": "120",
        "KUBEBOOT_ADMIN_USER": "ubuntu",
        "K8S_VERSION": "",
    })
    assert data == {
        "network": {"pod_cidr": "10.244.0.0/16"},
        "rendezvous": {"mount_path": "/mnt/share"},
        "timeouts": {"join_timeout": "120"},
        "admin_user": "ubuntu",
    }


def test_load_precedence(tmp_path, monkeypatch):
    config_file = tmp_path / "kubeboot.yaml"
    config_file.write_text(yaml.safe_dump({
        "network": {"pod_cidr": "10.244.0.0/16", "advertise_address": "10.0.0.5"},
        "timeouts": {"join_timeout": 300},
        "fabric": {"mtu": 1400},
    }))
    monkeypatch.setenv("MAX_WAIT_SECONDS", "120")
    monkeypatch.setenv("CALICO_VERSION", "v3.28.0")

    ctx = BootstrapContext.load(config_file, overrides={
        "network": {"advertise_address": "10.0.0.6", "pod_cidr": None},
        "dry_run": None,
    })
    assert ctx.network.pod_cidr == "10.244.0.0/16"
    assert ctx.network.advertise_address == "10.0.0.6"
    assert ctx.timeouts.join_timeout == 120
    assert ctx.versions.fabric == "v3.28.0"
    assert ctx.fabric.mtu == 1400
    assert ctx.control_plane_endpoint == "10.0.0.6:6443"
    assert ctx.dry_run is False


def test_missing_explicit_config_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        BootstrapContext.load(tmp_path / "nope.yaml")


def test_save_round_trips(tmp_path):
    ctx = BootstrapContext(admin_user="ubuntu")
    path = tmp_path / "out" / "config.yaml"
    ctx.save(path)
    assert BootstrapContext.load(path).admin_user == "ubuntu"


@pytest.mark.parametrize("network", [
    {"pod_cidr": "10.96.0.0/16"},
    {"pod_cidr": "not-a-cidr"},
    {"advertise_address": "10.0.0.300"},
])
def test_invalid_network(network):
    with pytest.raises(ValidationError):
        BootstrapContext(network=network)


def test_invalid_fabric_and_timeouts():
    with pytest.raises(ValidationError):
        BootstrapContext(fabric={"encapsulation": "GRE"})
    with pytest.raises(ValidationError):
        BootstrapContext(timeouts={"join_poll_interval": 0})


def test_manifest_url_uses_version():
    url = BootstrapContext().fabric.manifest_url("v3.27.0")
    assert url.endswith("/calico/v3.27.0/manifests/tigera-operator.yaml")


def test_helpers():
    assert merge_dicts({"a": {"b": 1, "c": 2}}, {"a": {"c": 3}}) == {"a": {"b": 1, "c": 3}}
    assert prune_none({"a": None, "b": {"c": None}, "d": 0}) == {"d": 0}
    assert redact({"join_token": "x", "nested": [{"api_key": "y", "name": "z"}]}) == {
        "join_token": "[REDACTED]",
        "nested": [{"api_key": "[REDACTED]", "name": "z"}],
    }
