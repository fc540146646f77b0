import pytest

from nodefleet.bootstrap.inventory import InventoryBuilder, read_inventory, write_inventory
from nodefleet.bootstrap.node.models import Host
from nodefleet.cloud.models import RegionAllocation
from nodefleet.config.models import ProvisionRequest
from nodefleet.errors import AllocationError


def _request(**kw):
    kw.setdefault("cluster_name", "c1")
    kw.setdefault(
        "regions",
        [{"name": "us-east-1", "validators": 2}, {"name": "eu-west-1", "validators": 1}],
    )
    return ProvisionRequest.model_validate(kw)


def test_build_flat_host_list_static_ips(provisioner):
    built = InventoryBuilder(provisioner).build(_request())

    assert list(built.allocation.regions) == ["us-east-1", "eu-west-1"]
    assert [h.node_id for h in built.hosts] == ["aws_node_i-0001", "aws_node_i-0002", "aws_node_i-0003"]
    assert [h.region for h in built.hosts] == ["us-east-1", "us-east-1", "eu-west-1"]
    assert built.public_ips == {"i-0001": "10.0.0.1", "i-0002": "10.0.0.2", "i-0003": "10.0.0.3"}
    assert all(str(h.pkey_path) == "/tmp/kp.pem" for h in built.hosts)
    assert provisioner.ip_lookups == []


def test_build_resolves_addresses_without_static_ips(provisioner):
    built = InventoryBuilder(provisioner).build(_request(use_static_ip=False))

    assert [h.address for h in built.hosts] == ["34.1.0.1", "34.1.0.2", "34.1.0.3"]
    assert [r for r, _ in provisioner.ip_lookups] == ["us-east-1", "eu-west-1"]


def test_last_instances_become_api_nodes(provisioner):
    req = _request(network="devnet", regions=[{"name": "us-east-1", "validators": 2, "api_nodes": 1}])
    built = InventoryBuilder(provisioner).build(req)

    ra = built.allocation.regions["us-east-1"]
    assert ra.instance_ids == ["i-0001", "i-0002", "i-0003"]
    assert ra.api_instance_ids == ["i-0003"]
    assert ra.validator_ids() == ["i-0001", "i-0002"]
    assert [h.is_api for h in built.hosts] == [False, False, True]


def test_provider_error_is_fatal(make_provisioner):
    prov = make_provisioner(fail_region="eu-west-1")
    with pytest.raises(AllocationError) as ei:
        InventoryBuilder(prov).build(_request())
    assert ei.value.region == "eu-west-1"


def test_short_allocation_is_fatal(make_provisioner):
    with pytest.raises(AllocationError, match="asked for 2"):
        InventoryBuilder(make_provisioner(short_region="us-east-1")).build(_request())


def test_duplicate_instance_ids_rejected(provisioner):
    class Dup(type(provisioner)):
        def allocate(self, region, count, *, static_ip, role="node"):
            return RegionAllocation(region=region, instance_ids=["i-same"] * count, public_ips=["1.1.1.1"] * count)

    with pytest.raises(AllocationError, match="duplicate"):
        InventoryBuilder(Dup()).build(_request())


def test_same_id_in_two_regions_rejected(provisioner):
    class Same(type(provisioner)):
        def allocate(self, region, count, *, static_ip, role="node"):
            ids = [f"i-{k}" for k in range(count)]
            return RegionAllocation(region=region, instance_ids=ids, public_ips=["1.1.1.1"] * count)

    with pytest.raises(AllocationError, match="also allocated"):
        InventoryBuilder(Same()).build(_request())


def test_allocate_monitoring(provisioner):
    ra, host = InventoryBuilder(provisioner).allocate_monitoring(_request(), "us-east-1")

    assert host.is_monitor and not host.is_api
    assert host.node_id == f"aws_node_{ra.instance_ids[0]}"
    assert provisioner.allocations[-1] == ("us-east-1", 1, True, "monitoring")


# ----------------- inventory files -----------------

def test_inventory_round_trip_and_merge(tmp_path):
    path = tmp_path / "inventories" / "c1" / "hosts"
    first = [
        Host(node_id="aws_node_i-1", address="10.0.0.1", pkey_path=tmp_path / "k.pem", ssh_common_args="-o A=b"),
        Host(node_id="aws_node_i-2", address="10.0.0.2", is_api=True),
    ]
    write_inventory(path, first, cluster_name="c1", network="devnet")
    write_inventory(path, [Host(node_id="aws_node_i-3", address="10.0.0.3")], cluster_name="c1", network="devnet")

    hosts = {h.node_id: h for h in read_inventory(path)}
    assert set(hosts) == {"aws_node_i-1", "aws_node_i-2", "aws_node_i-3"}
    assert hosts["aws_node_i-1"].pkey_path == tmp_path / "k.pem"
    assert hosts["aws_node_i-1"].ssh_common_args == "-o A=b"
    assert hosts["aws_node_i-2"].is_api
    assert not hosts["aws_node_i-3"].is_api


def test_read_missing_inventory(tmp_path):
    assert read_inventory(tmp_path / "nope") == []
