from pathlib import Path
import textwrap

import pytest
from pydantic import ValidationError

from nodefleet.config.loader import load_request
from nodefleet.config.models import ProvisionRequest
from nodefleet.config.paths import AppPaths


def _write(tmp_path: Path, text: str, name="request.yaml") -> Path:
    f = tmp_path / name
    f.write_text(textwrap.dedent(text))
    return f


def test_load_request_minimal_ok(tmp_path: Path):
    f = _write(tmp_path, """
        cluster_name: c1
        regions:
          - name: us-east-1
            validators: 2
    """)
    req = load_request(f)
    assert req.cluster_name == "c1"
    assert req.network == "fuji"
    assert req.provider == "aws"
    assert req.total_nodes() == 2
    assert req.use_static_ip is True
    assert req.monitoring_region == "us-east-1"
    assert not req.metrics_enabled


def test_secrets_and_env_expansion(tmp_path: Path, monkeypatch):
    monkeypatch.delenv("NODEFLEET_SECRETS_FILE", raising=False)
    monkeypatch.setenv("GCP_PROJECT", "proj-from-env")
    f = _write(tmp_path, """
        cluster_name: c1
        provider: gcp
        gcp_project: ${GCP_PROJECT}
        regions:
          - name: us-east1
            validators: 1
    """)
    _write(tmp_path, "gcp_credentials: /secrets/sa.json\n", name="secrets.yaml")

    req = load_request(f)
    assert req.gcp_project == "proj-from-env"
    assert req.gcp_credentials == "/secrets/sa.json"


def test_overrides_win_but_empty_never_clobbers(tmp_path: Path):
    f = _write(tmp_path, """
        cluster_name: from-file
        network: devnet
        regions:
          - name: us-east-1
            validators: 1
    """)
    req = load_request(f, {"cluster_name": "from-flag", "network": None})
    assert req.cluster_name == "from-flag"
    assert req.network == "devnet"


def test_request_is_immutable():
    req = ProvisionRequest(cluster_name="c1", regions=[{"name": "r", "validators": 1}])
    with pytest.raises(ValidationError):
        req.cluster_name = "other"


@pytest.mark.parametrize(
    "data, message",
    [
        ({"regions": []}, "at least one region"),
        ({"regions": [{"name": "r", "validators": 1}, {"name": "r", "validators": 2}]}, "not unique"),
        ({"regions": [{"name": "r", "validators": 1, "api_nodes": 1}]}, "only be created in Devnet"),
        ({"regions": [{"name": "r", "validators": 0}]}, "greater than 0"),
        ({"provider": "gcp", "aws_profile": "dev", "regions": [{"name": "r", "validators": 1}]}, "AWS profile"),
        ({"gcp_project": "p", "regions": [{"name": "r", "validators": 1}]}, "not GCP"),
        ({"client_version": {"mode": "custom", "version": "1.2"}, "regions": [{"name": "r", "validators": 1}]}, "semantic version"),
        ({"client_version": {"mode": "latest", "version": "v1.2.3"}, "regions": [{"name": "r", "validators": 1}]}, "mode 'custom'"),
        ({"monitoring": {"region": "r"}, "regions": [{"name": "r", "validators": 1}]}, "monitoring is not enabled"),
    ],
)
def test_request_validation(data, message):
    with pytest.raises(ValidationError, match=message):
        ProvisionRequest.model_validate({"cluster_name": "c1", **data})


def test_metrics_follow_monitoring_unless_set():
    base = {"cluster_name": "c1", "regions": [{"name": "r", "validators": 1}]}
    assert ProvisionRequest.model_validate({**base, "monitoring": {"enabled": True}}).metrics_enabled
    assert not ProvisionRequest.model_validate({**base, "monitoring": {"enabled": True}, "metrics": False}).metrics_enabled

    # a recorded monitoring host turns metrics on even without the flag
    plain = ProvisionRequest.model_validate(base)
    assert not plain.metrics_enabled
    assert plain.machine_metrics(True)
    assert not ProvisionRequest.model_validate({**base, "metrics": False}).machine_metrics(True)


def test_app_paths_layout(tmp_path: Path, monkeypatch):
    monkeypatch.setenv("NODEFLEET_HOME", str(tmp_path / "h"))
    p = AppPaths.default()
    assert p.home == tmp_path / "h"
    assert p.clusters_config == tmp_path / "h" / "clusters.json"
    assert p.inventory_file("c1") == tmp_path / "h" / "inventories" / "c1" / "hosts"
    assert p.monitoring_inventory_file("c1") == tmp_path / "h" / "inventories" / "c1" / "monitoring" / "hosts"
    assert p.node_cloud_config("i-1") == tmp_path / "h" / "nodes" / "i-1" / "node_cloud_config.json"
    assert p.ssh_cert("kp") == tmp_path / "h" / "ssh" / "kp.pem"
