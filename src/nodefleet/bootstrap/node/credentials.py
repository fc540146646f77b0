# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/nodefleet/bootstrap/node/credentials.py

from __future__ import annotations

import posixpath
from typing import List, Protocol

from nodefleet.bootstrap.node.models import FileUpload, Host
from nodefleet.config.paths import SIGNER_KEY_FILE, STAKER_CERT_FILE, STAKER_KEY_FILE, AppPaths

STAKING_FILES = (STAKER_CERT_FILE, STAKER_KEY_FILE, SIGNER_KEY_FILE)


class CredentialSource(Protocol):
    """
    Where a node's staking credentials come from. Generating them is out of
    scope; a source only says which local files go to which remote paths.
    """

    def files_for(self, host: Host) -> List[FileUpload]:
        ...


class DirectoryCredentialSource:
    """
    Reads pre-generated credentials from nodes/<instance-id>/ under the
    nodefleet home.
    """

    def __init__(self, paths: AppPaths, staking_dir: str):
        self.paths = paths
        self.staking_dir = staking_dir

    def files_for(self, host: Host) -> List[FileUpload]:
        local_dir = self.paths.node_dir(host.cloud_id)
        uploads = []
        for name in STAKING_FILES:
            local = local_dir / name
            if not local.is_file():
                raise FileNotFoundError(f"missing staking credential {local} for {host.node_id}")
            uploads.append(FileUpload(local_path=local, remote_path=posixpath.join(self.staking_dir, name)))
        return uploads
