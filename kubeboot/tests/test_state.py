import json

from kubeboot.models import LifecycleState, NodeRole
from kubeboot.state import NodeStateStore


def test_missing_file_is_uninitialized(tmp_path):
    store = NodeStateStore(str(tmp_path / "node-state.json"))
    assert store.current() == LifecycleState.UNINITIALIZED
    assert store.load()["history"] == []


def test_advance_moves_forward_and_records_history(tmp_path):
    store = NodeStateStore(str(tmp_path / "node-state.json"))
    store.advance(LifecycleState.INSTALLED, "install", kubernetes_version="v1.30.2")
    store.advance(LifecycleState.JOINED, "join", role=NodeRole.WORKER, consumed_epoch=3)

    record = store.load()
    assert record["state"] == "joined"
    assert record["role"] == "worker"
    assert record["kubernetes_version"] == "v1.30.2"
    assert record["consumed_epoch"] == 3
    assert [h["component"] for h in record["history"]] == ["install", "join"]


def test_advance_never_moves_backwards(tmp_path):
    store = NodeStateStore(str(tmp_path / "node-state.json"))
    store.advance(LifecycleState.READY, "network")
    record = store.advance(LifecycleState.INSTALLED, "install", kubernetes_version="v1.30.3")
    assert record["state"] == "ready"
    assert record["kubernetes_version"] == "v1.30.3"
    assert store.current() == LifecycleState.READY


def test_dry_run_does_not_write(tmp_path):
    path = tmp_path / "node-state.json"
    NodeStateStore(str(path), dry_run=True).advance(LifecycleState.INSTALLED, "install")
    assert not path.exists()


def test_unreadable_or_invalid_record_is_ignored(tmp_path):
    path = tmp_path / "node-state.json"
    path.write_text("{not json")
    assert NodeStateStore(str(path)).current() == LifecycleState.UNINITIALIZED

    path.write_text(json.dumps({"state": "exploded"}))
    assert NodeStateStore(str(path)).current() == LifecycleState.UNINITIALIZED


def test_unwritable_location_only_warns(tmp_path, caplog):
    blocker = tmp_path / "file"
    blocker.write_text("")
    store = NodeStateStore(str(blocker / "node-state.json"))
    record = store.advance(LifecycleState.INSTALLED, "install")
    assert record["state"] == "installed"
    assert "Could not persist node state" in caplog.text


def test_reach_writes_only_when_behind(tmp_path):
    path = tmp_path / "node-state.json"
    store = NodeStateStore(str(path))

    store.reach(LifecycleState.JOINED, "join", role=NodeRole.WORKER)
    before = path.read_bytes()
    for _ in range(3):
        store.reach(LifecycleState.JOINED, "join", role=NodeRole.WORKER)
        store.reach(LifecycleState.INSTALLED, "install")
    assert path.read_bytes() == before
    assert len(store.load()["history"]) == 1


def test_reach_records_a_missing_role(tmp_path):
    store = NodeStateStore(str(tmp_path / "node-state.json"))
    store.advance(LifecycleState.INITIALIZED, "init")
    record = store.reach(LifecycleState.INITIALIZED, "init", role=NodeRole.LEADER)
    assert record["role"] == "leader"
