import threading
from pathlib import Path

import pytest

from nodefleet.cloud.models import RegionAllocation
from nodefleet.config.paths import AppPaths
from nodefleet.errors import AllocationError, SSHCommandError

# ----------------- Fake SSH session -----------------

class FakeSession:
    """Stands in for SSHRunner; records everything, runs nothing."""

    def __init__(self, label="fake", responses=None, remote_files=None):
        self.label = label
        self.responses = dict(responses or {})      # substring of cmd -> (rc, out, err)
        self.remote_files = dict(remote_files or {})
        self.commands = []
        self.scripts = []
        self.puts = []
        self.http_requests = []
        self.http_responses = []
        self.closed = False

    def run(self, cmd, *, sudo=False, env=None, timeout=None):
        self.commands.append(cmd)
        for marker, resp in self.responses.items():
            if marker in cmd:
                return resp
        return 0, "", ""

    def check(self, cmd, **kw):
        rc, out, err = self.run(cmd, **kw)
        if rc != 0:
            raise SSHCommandError(cmd, rc, out, err)
        return out

    def run_script(self, body, *, env=None, timeout=None):
        self.scripts.append(body)
        return self.check(body, env=env, timeout=timeout)

    def put_text(self, content, remote_path, *, sudo=False):
        self.remote_files[remote_path] = content

    def put_file(self, local_path, remote_path, *, timeout=None):
        self.puts.append((str(local_path), remote_path))
        self.remote_files[remote_path] = Path(local_path).read_text()

    def get_file(self, remote_path, local_path, *, timeout=None):
        if remote_path not in self.remote_files:
            raise IOError(f"No such file: {remote_path}")
        local_path = Path(local_path)
        local_path.parent.mkdir(parents=True, exist_ok=True)
        local_path.write_text(self.remote_files[remote_path])
        return local_path

    def put_dir(self, local_dir, remote_dir):
        self.puts.append((str(local_dir), remote_dir))

    def forward_http(self, request, *, port, timeout=10.0):
        self.http_requests.append((request, port))
        return self.http_responses.pop(0)

    def close(self):
        self.closed = True


class FakeFleet:
    """
    Connector over a set of FakeSessions keyed by node id. A node can be
    down for good or fail a given number of connects first.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self.sessions = {}
        self.failures = {}
        self.down = set()
        self.calls = []

    def session(self, node_id, **kw):
        with self._lock:
            if node_id not in self.sessions:
                self.sessions[node_id] = FakeSession(label=node_id, **kw)
            return self.sessions[node_id]

    def fail(self, node_id, *errors):
        self.failures[node_id] = list(errors)

    def __call__(self, host, *, connect_timeout=30.0):
        with self._lock:
            self.calls.append(host.node_id)
            if host.node_id in self.down:
                raise ConnectionRefusedError(f"{host.address}:22 refused")
            pending = self.failures.get(host.node_id)
            if pending:
                raise pending.pop(0)
        return self.session(host.node_id)


# ----------------- Fake cloud provisioner -----------------

class FakeProvisioner:
    name = "aws"
    host_prefix = "aws_node"

    def __init__(self, fail_region=None, short_region=None, cert_path="/tmp/kp.pem"):
        self.fail_region = fail_region
        self.short_region = short_region
        self.cert_path = cert_path
        self.allocations = []
        self.firewall = []
        self.ip_lookups = []
        self._seq = 0

    def allocate(self, region, count, *, static_ip, role="node"):
        if region == self.fail_region:
            raise AllocationError(self.name, region, "instance limit exceeded")
        if region == self.short_region:
            count -= 1
        ids, ips = [], []
        for _ in range(count):
            self._seq += 1
            ids.append(f"i-{self._seq:04d}")
            ips.append(f"10.0.0.{self._seq}")
        self.allocations.append((region, count, static_ip, role))
        return RegionAllocation(
            region=region,
            instance_ids=ids,
            public_ips=ips if static_ip else [],
            image_id="ami-123",
            key_pair="tester-nodefleet-keypair",
            security_group="sg-1",
            cert_path=self.cert_path,
        )

    def get_public_ips(self, region, instance_ids):
        self.ip_lookups.append((region, list(instance_ids)))
        return {iid: f"34.1.0.{int(iid.split('-')[1])}" for iid in instance_ids}

    def add_monitoring_firewall_rule(self, region, allocation, monitoring_ip, ports):
        self.firewall.append((region, monitoring_ip, tuple(ports)))


# ----------------- Fixtures -----------------

@pytest.fixture
def paths(tmp_path):
    return AppPaths(home=tmp_path / "home")


@pytest.fixture
def fleet():
    return FakeFleet()


@pytest.fixture
def provisioner():
    return FakeProvisioner()


@pytest.fixture
def make_provisioner():
    return FakeProvisioner


@pytest.fixture
def make_session():
    return FakeSession


class Recorder:
    def __init__(self):
        self.events = []

    def notify(self, event):
        self.events.append(event)

    def of(self, cls):
        return [e for e in self.events if isinstance(e, cls)]


@pytest.fixture
def recorder():
    return Recorder()
