# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

#src/nodefleet/logging/log.py

from __future__ import annotations

import logging
import re
import uuid
from datetime import datetime, timezone
from pathlib import Path

NO_CLUSTER = "_"

# transport noise worth keeping in the trace file, not on the console
QUIET_LOGGERS = ("paramiko", "botocore", "boto3", "urllib3")

_UNSAFE = re.compile(r"[^A-Za-z0-9_.-]+")


class RunContextFilter(logging.Filter):
    """
    Stamps every record with the run it belongs to. Per-host workers run on
    threads named after their phase ("bootstrap_0", "readiness_3", ...), so
    the worker column tells which fan-out a line came from.
    """

    def __init__(self, run_id: str, cluster: str):
        super().__init__()
        self.run_id = run_id
        self.short_id = run_id[:8]
        self.cluster = cluster

    def filter(self, record: logging.LogRecord) -> bool:
        record.run_id = self.short_id
        record.cluster = self.cluster
        record.worker = "main" if record.threadName == "MainThread" else record.threadName
        return True


def cluster_log_dir(base_dir: Path, cluster: str | None) -> Path:
    """One directory of run logs per cluster name."""
    return base_dir / (_UNSAFE.sub("-", cluster) if cluster else NO_CLUSTER)


def init_logging(
    *,
    base_dir: Path | None = None,
    cluster: str | None = None,
    name: str = "nodefleet",
    verbose: bool = False,
) -> tuple[logging.Logger, str, Path]:
    """
    Initializes:
      - full trace log file under <base_dir>/<cluster>/ (remote commands,
        step output, SSH transport)
      - console output at INFO, DEBUG with --debug
      - returns run_id so observers can reuse it
    """
    run_id = str(uuid.uuid4())

    if base_dir is None:
        base_dir = Path.home() / ".nodefleet" / "logs"
    log_dir = cluster_log_dir(base_dir, cluster)
    log_dir.mkdir(parents=True, exist_ok=True)

    ts = datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S")
    log_path = log_dir / f"{ts}-{run_id}.log"

    context = RunContextFilter(run_id, cluster or NO_CLUSTER)

    logger = logging.getLogger(name)
    logger.setLevel(logging.DEBUG)
    logger.handlers.clear()
    logger.propagate = False

    file_format = logging.Formatter(
        "%(asctime)s | %(levelname)-7s | %(run_id)s | %(worker)-14s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    console_format = logging.Formatter(
        "%(asctime)s | %(levelname)-7s | %(worker)s | %(message)s",
        datefmt="%H:%M:%S",
    )

    # File = FULL TRACE
    fh = logging.FileHandler(log_path)
    fh.setLevel(logging.DEBUG)
    fh.setFormatter(file_format)
    fh.addFilter(context)
    fh._nodefleet = True

    # Console = INFO by default, DEBUG when --debug is passed
    ch = logging.StreamHandler()
    ch.setLevel(logging.DEBUG if verbose else logging.INFO)
    ch.setFormatter(console_format)
    ch.addFilter(context)

    logger.addHandler(fh)
    logger.addHandler(ch)

    for noisy in QUIET_LOGGERS:
        lib = logging.getLogger(noisy)
        lib.setLevel(logging.DEBUG if verbose else logging.WARNING)
        lib.handlers = [h for h in lib.handlers if not getattr(h, "_nodefleet", False)]
        lib.addHandler(fh)
        lib.propagate = False

    logger.info("=== nodefleet run started ===")
    logger.info(f"run_id={run_id}")
    logger.info(f"cluster={cluster or '-'}")
    logger.info(f"log_file={log_path}")

    return logger, run_id, log_path
