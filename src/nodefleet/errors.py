# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/nodefleet/errors.py

from __future__ import annotations

from typing import Dict, Optional


class NodefleetError(RuntimeError):
    pass


class AllocationError(NodefleetError):
    """
    Cloud provisioner failure. Fatal: raised before any host is dispatched.
    """

    def __init__(self, provider: str, region: Optional[str], message: str):
        self.provider = provider
        self.region = region
        where = f"{provider}/{region}" if region else provider
        super().__init__(f"[{where}] allocation failed: {message}")


class ReadinessError(NodefleetError):
    def __init__(self, message: str, attempts: int = 0):
        self.attempts = attempts
        super().__init__(message)


class StepError(NodefleetError):
    """
    A bootstrap step failed on one host. Carries the stage name so the
    outcome can say where the pipeline stopped.
    """

    def __init__(self, stage: str, cause: BaseException):
        self.stage = stage
        self.cause = cause
        super().__init__(f"{stage}: {cause}")


class MonitoringError(NodefleetError):
    pass


class InvalidTransitionError(NodefleetError):
    pass


class TopologyConflictError(NodefleetError):
    pass


class VersionResolutionError(NodefleetError):
    pass


class SSHCommandError(NodefleetError):
    def __init__(self, cmd: str, rc: int, stdout: str = "", stderr: str = ""):
        self.cmd = cmd
        self.rc = rc
        self.stdout = stdout
        self.stderr = stderr
        tail = (stderr or stdout).strip().splitlines()[-5:]
        super().__init__(f"command exited with {rc}: {' | '.join(tail) or cmd}")


class ProvisionFailedError(NodefleetError):
    def __init__(self, failed: Dict[str, str], report=None):
        self.failed = dict(failed)
        self.report = report
        names = ", ".join(sorted(self.failed))
        super().__init__(f"failed to deploy node(s) {names}")
