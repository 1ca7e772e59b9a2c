import pytest
from fastapi.testclient import TestClient
from kubernetes.client.rest import ApiException

from kubeboot.api.main import app
from kubeboot.config import set_context
from kubeboot.errors import PrerequisiteError
from kubeboot.models import ClusterReport, JoinCredential, LifecycleState
from kubeboot.rendezvous import FileRendezvousChannel
from kubeboot.state import NodeStateStore

from .conftest import JOIN_COMMAND, TOKEN

API_KEY = "test-api-key"
HEADERS = {"X-API-Key": API_KEY}


@pytest.fixture
def api(ctx, monkeypatch):
    monkeypatch.setenv("KUBEBOOT_API_KEY", API_KEY)
    set_context(ctx)
    return TestClient(app)


def test_requires_api_key(api):
    assert api.get("/state").status_code == 403
    assert api.get("/state", headers={"X-API-Key": "wrong"}).status_code == 403


def test_unset_api_key_refuses_everything(api, monkeypatch):
    monkeypatch.delenv("KUBEBOOT_API_KEY")
    assert api.get("/state", headers=HEADERS).status_code == 503
    assert api.get("/state", headers={"X-API-Key": "kubeboot-secret"}).status_code == 503


def test_docs_are_public(api):
    assert api.get("/openapi.json").status_code == 200


def test_state(api, ctx):
    NodeStateStore(ctx.paths.state_file).advance(LifecycleState.INSTALLED, "install")
    response = api.get("/state", headers=HEADERS)
    assert response.status_code == 200
    assert response.json()["state"] == "installed"


def test_rendezvous_before_and_after_publish(api, ctx):
    assert api.get("/rendezvous", headers=HEADERS).json() == {"available": True, "published": False}

    FileRendezvousChannel(ctx.rendezvous.mount_path).publish(JoinCredential.parse(JOIN_COMMAND), "")
    response = api.get("/rendezvous", headers=HEADERS)
    data = response.json()
    assert data["published"] and data["valid"]
    assert data["endpoint"] == "10.0.0.10:6443"
    assert data["epoch"] == 1
    assert TOKEN not in response.text


def test_rendezvous_invalid_content(api, ctx):
    channel = FileRendezvousChannel(ctx.rendezvous.mount_path)
    channel.directory.mkdir(parents=True)
    channel.command_file.write_text("kubeadm join 10.0.0.10:6443\n")
    data = api.get("/rendezvous", headers=HEADERS).json()
    assert data["published"] and not data["valid"]


def test_verify(api, monkeypatch):
    monkeypatch.setattr("kubeboot.modules.verify.verify_cluster",
                        lambda ctx: ClusterReport(total_nodes=2, ready_nodes=2))
    data = api.get("/verify", headers=HEADERS).json()
    assert data["status"] == "PASS"
    assert data["node_ratio"] == "2/2"


@pytest.mark.parametrize("error,status", [
    (PrerequisiteError("No kubeconfig found", component="verify"), 503),
    (ApiException(status=500, reason="Internal Server Error"), 502),
])
def test_verify_errors(api, monkeypatch, error, status):
    def fail(ctx):
        raise error

    monkeypatch.setattr("kubeboot.modules.verify.verify_cluster", fail)
    assert api.get("/verify", headers=HEADERS).status_code == status
