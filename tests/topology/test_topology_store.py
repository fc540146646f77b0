import json
import threading

import pytest

from nodefleet.errors import TopologyConflictError
from nodefleet.topology.models import NodeCloudConfig
from nodefleet.topology.store import TopologyStore


def test_empty_store(paths):
    store = TopologyStore(paths)
    assert store.revision() == 0
    assert store.load("c1") is None
    assert store.list_clusters() == {}


def test_add_node_dedupes_and_bumps_revision(paths):
    store = TopologyStore(paths)
    store.add_node("c1", "i-1", "fuji")
    store.add_node("c1", "i-1", "fuji")
    store.add_node("c1", "i-2", "fuji", is_api=True)

    topo = store.load("c1")
    assert topo.nodes == ["i-1", "i-2"]
    assert topo.api_nodes == ["i-2"]
    assert topo.validators() == ["i-1"]
    assert store.revision() == 3


def test_record_cluster_single_write(paths):
    store = TopologyStore(paths)
    cfg = store.record_cluster(
        "c1",
        "devnet",
        {"i-1": False, "i-2": True},
        monitoring_instance="i-9",
        key_pairs={"kp": "/ssh/kp.pem"},
        expected_revision=0,
    )

    assert cfg.revision == 1
    on_disk = json.loads(paths.clusters_config.read_text())
    assert on_disk["clusters"]["c1"] == {
        "network": "devnet",
        "nodes": ["i-1", "i-2"],
        "api_nodes": ["i-2"],
        "monitoring_instance": "i-9",
        "monitoring_state": "active",
        "revision": 1,
    }
    assert on_disk["key_pairs"] == {"kp": "/ssh/kp.pem"}
    # monitoring host is not a cluster node
    assert "i-9" not in store.load("c1").nodes


def test_second_run_extends_cluster(paths):
    store = TopologyStore(paths)
    store.record_cluster("c1", "fuji", {"i-1": False}, monitoring_instance="i-9")
    store.record_cluster("c1", "fuji", {"i-2": False})

    topo = store.load("c1")
    assert topo.nodes == ["i-1", "i-2"]
    assert topo.monitoring_instance == "i-9"


def test_stale_revision_refused(paths):
    store = TopologyStore(paths)
    base = store.cluster_revision("c1")
    store.add_node("c1", "i-1", "fuji", expected_revision=base)

    with pytest.raises(TopologyConflictError):
        store.add_node("c1", "i-2", "fuji", expected_revision=base)
    assert store.load("c1").nodes == ["i-1"]


def test_other_writer_between_read_and_replace(paths):
    store = TopologyStore(paths)
    other = TopologyStore(paths)

    def sneaky(cfg):
        # a second process writes while this update is in flight
        other.add_node("c1", "i-other", "fuji")
        cfg.key_pairs["kp"] = "/ssh/kp.pem"

    with pytest.raises(TopologyConflictError):
        store.update(sneaky)
    assert store.load("c1").nodes == ["i-other"]


def test_concurrent_writers_lose_no_update(paths):
    store = TopologyStore(paths)

    def add(i):
        store.add_node("c1", f"i-{i}", "fuji")

    threads = [threading.Thread(target=add, args=(i,)) for i in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sorted(store.load("c1").nodes) == sorted(f"i-{i}" for i in range(8))
    assert store.revision() == 8


def test_node_cloud_config_round_trip(paths):
    store = TopologyStore(paths)
    cfg = NodeCloudConfig(
        node_id="i-1",
        region="us-east-1",
        image_id="ami-1",
        key_pair="kp",
        cert_path="/ssh/kp.pem",
        security_group="sg-1",
        public_ip="1.2.3.4",
        cloud_service="aws",
    )
    path = store.save_node_config(cfg)

    assert path == paths.node_dir("i-1") / "node_cloud_config.json"
    assert store.load_node_config("i-1") == cfg
    assert store.load_node_config("i-missing") is None
    assert not list(path.parent.glob(".*.tmp"))


def test_other_cluster_does_not_conflict(paths):
    store = TopologyStore(paths)
    base = store.cluster_revision("c1")
    store.add_node("c2", "i-x", "fuji")

    store.record_cluster("c1", "fuji", {"i-1": False}, expected_revision=base)

    assert store.load("c1").nodes == ["i-1"]
    assert store.load("c2").nodes == ["i-x"]
    assert store.cluster_revision("c1") == 1
    assert store.revision() == 2


def test_unrelated_writer_during_update_is_merged(paths):
    store = TopologyStore(paths)
    other = TopologyStore(paths)
    calls = []

    def mutate(cfg):
        if not calls:
            # another process records a different cluster while this update is in flight
            other.add_node("c2", "i-x", "fuji")
        calls.append(cfg.revision)
        TopologyStore._add_node(cfg, "c1", "i-1", "fuji", False)

    store.update(mutate, expected_revision=0, cluster="c1")

    assert calls == [0, 1]
    assert store.load("c1").nodes == ["i-1"]
    assert store.load("c2").nodes == ["i-x"]
    assert store.revision() == 2


def test_same_cluster_writer_during_update_conflicts(paths):
    store = TopologyStore(paths)
    other = TopologyStore(paths)

    def mutate(cfg):
        other.add_node("c1", "i-other", "fuji")
        TopologyStore._add_node(cfg, "c1", "i-1", "fuji", False)

    with pytest.raises(TopologyConflictError):
        store.update(mutate, cluster="c1")
    assert store.load("c1").nodes == ["i-other"]


def test_monitoring_state_recorded(paths):
    store = TopologyStore(paths)
    store.record_cluster("c1", "fuji", {"i-1": False}, monitoring_instance="i-9", monitoring_state="pending")
    assert store.load("c1").monitoring_state == "pending"

    store.set_monitoring("c1", "i-9")
    topo = store.load("c1")
    assert (topo.monitoring_instance, topo.monitoring_state) == ("i-9", "active")
