# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/nodefleet/release/versions.py

from __future__ import annotations

import logging
import os
from typing import Dict, Optional

import requests

from nodefleet.config.models import SEMVER_RE, ClientSpec, ProvisionRequest
from nodefleet.errors import VersionResolutionError

log = logging.getLogger("nodefleet")

GITHUB_API = "https://api.github.com"


def _headers() -> Dict[str, str]:
    headers = {"Accept": "application/vnd.github+json"}
    token = os.environ.get("GITHUB_TOKEN")
    if token:
        headers["Authorization"] = f"Bearer {token}"
    return headers


def _get(session: requests.Session, url: str):
    try:
        r = session.get(url, headers=_headers(), timeout=30)
    except requests.RequestException as e:
        raise VersionResolutionError(f"GitHub request failed: {e}") from e
    if r.status_code != 200:
        raise VersionResolutionError(f"GitHub request {url} failed: {r.status_code} {r.text[:200]}")
    return r.json()


def latest_release(client: ClientSpec, session: Optional[requests.Session] = None) -> str:
    session = session or requests.Session()
    doc = _get(session, f"{GITHUB_API}/repos/{client.github_org}/{client.github_repo}/releases/latest")
    return doc["tag_name"]


def latest_prerelease(client: ClientSpec, session: Optional[requests.Session] = None) -> str:
    """
    Newest entry of the release list, pre-release or not.
    """
    session = session or requests.Session()
    releases = _get(session, f"{GITHUB_API}/repos/{client.github_org}/{client.github_repo}/releases")
    if not releases:
        raise VersionResolutionError(f"no releases published for {client.github_org}/{client.github_repo}")
    return releases[0]["tag_name"]


def resolve_client_version(request: ProvisionRequest, session: Optional[requests.Session] = None) -> str:
    choice = request.client_version
    if choice.mode == "custom":
        version = choice.version or ""
    elif choice.mode == "latest-prerelease":
        version = latest_prerelease(request.client, session)
    else:
        version = latest_release(request.client, session)

    if not SEMVER_RE.match(version):
        raise VersionResolutionError(f"'{version}' is not a legal semantic version (ex: v1.1.1)")
    log.info("using %s %s", request.client.name, version)
    return version
