# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/nodefleet/bootstrap/node/steps.py

from __future__ import annotations

import logging
import posixpath
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from nodefleet.bootstrap.node.credentials import CredentialSource
from nodefleet.bootstrap.node.models import FileUpload, Host, NodeBootstrapOptions
from nodefleet.utils.ssh_runner import SSHRunner
from nodefleet.utils.templates import TemplateRenderer, split_script

log = logging.getLogger("nodefleet")

SCRIPTS_DIR = Path(__file__).parent / "scripts"

STAGE_UPLOAD_CREDENTIALS = "upload-credentials"
STAGE_SETUP_NODE = "setup-node"
STAGE_MACHINE_METRICS = "setup-machine-metrics"
STAGE_BUILD_ENV = "setup-build-env"
STAGE_CLI = "setup-cli"


@dataclass(frozen=True)
class BootstrapStep:
    """
    One stage of the node pipeline: files to push before the script, an
    optional script template, and files to push after it.
    """
    name: str
    template: Optional[str] = None
    context: Dict[str, Any] = field(default_factory=dict)
    uploads: Tuple[FileUpload, ...] = ()
    post_uploads: Tuple[FileUpload, ...] = ()


def _script_context(options: NodeBootstrapOptions) -> Dict[str, Any]:
    return {
        "client": options.client,
        "client_version": options.client_version,
        "network": options.network,
        "devnet": options.devnet,
        "go_version": options.go_version,
        "cli_branch": options.cli_branch,
    }


def build_node_pipeline(
    host: Host,
    options: NodeBootstrapOptions,
    credentials: CredentialSource,
) -> List[BootstrapStep]:
    """
    Ordered steps for one host. The metrics agent step only appears when
    metrics are on. The build environment is always prepared; the CLI is
    built from source only when the feature flag is set.
    """
    ctx = _script_context(options)

    post = ()
    if options.cli_config_path is not None:
        cfg = Path(options.cli_config_path)
        post = (FileUpload(cfg, posixpath.join(options.client.cli_config_dir, cfg.name)),)

    steps = [
        BootstrapStep(STAGE_UPLOAD_CREDENTIALS, uploads=tuple(credentials.files_for(host))),
        BootstrapStep(STAGE_SETUP_NODE, template="setup_node.sh.j2", context=ctx, post_uploads=post),
    ]
    if options.metrics_enabled:
        steps.append(BootstrapStep(STAGE_MACHINE_METRICS, template="setup_machine_metrics.sh.j2", context=ctx))
    steps.append(BootstrapStep(STAGE_BUILD_ENV, template="setup_build_env.sh.j2", context=ctx))
    if options.install_cli_from_source:
        steps.append(BootstrapStep(STAGE_CLI, template="setup_cli_from_source.sh.j2", context=ctx))
    return steps


def _push(session: SSHRunner, uploads: Tuple[FileUpload, ...], timeout: float) -> None:
    for dirname in sorted({posixpath.dirname(u.remote_path) for u in uploads}):
        session.check(f"mkdir -p {dirname}", timeout=timeout)
    for u in uploads:
        session.put_file(u.local_path, u.remote_path, timeout=timeout)


def execute_step(
    session: SSHRunner,
    step: BootstrapStep,
    options: NodeBootstrapOptions,
    renderer: Optional[TemplateRenderer] = None,
) -> None:
    """
    Run one step to completion on an open session. Any failure propagates.
    """
    t = options.timeouts
    if step.uploads:
        _push(session, step.uploads, t.transfer_s)

    if step.template:
        renderer = renderer or TemplateRenderer(SCRIPTS_DIR)
        script = renderer.render(step.template, step.context)
        for task in split_script(script):
            log.info("[%s] %s", session.label, task.title)
            session.run_script(task.body, env=options.extra_env or None, timeout=t.step_s)

    if step.post_uploads:
        _push(session, step.post_uploads, t.transfer_s)
