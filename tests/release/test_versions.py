import pytest
import requests

from nodefleet.config.models import ProvisionRequest
from nodefleet.errors import VersionResolutionError
from nodefleet.release.versions import latest_prerelease, latest_release, resolve_client_version


class _Resp:
    def __init__(self, status, payload):
        self.status_code = status
        self._payload = payload
        self.text = str(payload)

    def json(self):
        return self._payload


class FakeGitHub:
    def __init__(self, routes):
        self.routes = routes
        self.urls = []

    def get(self, url, headers=None, timeout=None):
        self.urls.append(url)
        if url not in self.routes:
            return _Resp(404, {"message": "Not Found"})
        status, payload = self.routes[url]
        if isinstance(payload, Exception):
            raise payload
        return _Resp(status, payload)


BASE = "https://api.github.com/repos/ava-labs/avalanchego"


def _request(**kw):
    return ProvisionRequest.model_validate({"cluster_name": "c1", "regions": [{"name": "r", "validators": 1}], **kw})


def test_latest_release():
    gh = FakeGitHub({f"{BASE}/releases/latest": (200, {"tag_name": "v1.11.0"})})
    assert resolve_client_version(_request(), gh) == "v1.11.0"
    assert gh.urls == [f"{BASE}/releases/latest"]


def test_latest_prerelease_is_first_listed():
    gh = FakeGitHub({f"{BASE}/releases": (200, [{"tag_name": "v1.12.0-fuji"}, {"tag_name": "v1.11.0"}])})
    req = _request(client_version={"mode": "latest-prerelease"})
    assert resolve_client_version(req, gh) == "v1.12.0-fuji"


def test_custom_version_needs_no_lookup():
    gh = FakeGitHub({})
    req = _request(client_version={"mode": "custom", "version": "v1.10.11"})
    assert resolve_client_version(req, gh) == "v1.10.11"
    assert gh.urls == []


def test_bad_tag_rejected():
    gh = FakeGitHub({f"{BASE}/releases/latest": (200, {"tag_name": "nightly"})})
    with pytest.raises(VersionResolutionError, match="not a legal semantic version"):
        resolve_client_version(_request(), gh)


def test_http_errors():
    client = _request().client
    with pytest.raises(VersionResolutionError, match="403"):
        latest_release(client, FakeGitHub({f"{BASE}/releases/latest": (403, {"message": "rate limited"})}))
    with pytest.raises(VersionResolutionError, match="request failed"):
        latest_release(client, FakeGitHub({f"{BASE}/releases/latest": (0, requests.ConnectionError("down"))}))
    with pytest.raises(VersionResolutionError, match="no releases"):
        latest_prerelease(client, FakeGitHub({f"{BASE}/releases": (200, [])}))
