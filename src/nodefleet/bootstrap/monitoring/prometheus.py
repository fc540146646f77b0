# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/nodefleet/bootstrap/monitoring/prometheus.py

from __future__ import annotations

from typing import Any, Dict, Iterable, List

import yaml

CLIENT_JOB = "client"
MACHINE_JOB = "machine"
CLIENT_METRICS_PATH = "/ext/metrics"
PROMETHEUS_CONFIG_PATH = "/etc/prometheus/prometheus.yml"


def scrape_targets(addresses: Iterable[str], port: int) -> List[str]:
    """Sorted, de-duplicated 'ip:port' pairs."""
    return sorted({f"{a}:{port}" for a in addresses if a})


def build_scrape_config(
    addresses: Iterable[str],
    *,
    api_port: int = 9650,
    metrics_port: int = 9100,
    machine_metrics: bool = True,
    scrape_interval: str = "10s",
) -> Dict[str, Any]:
    addresses = list(addresses)
    jobs: List[Dict[str, Any]] = [
        {
            "job_name": CLIENT_JOB,
            "metrics_path": CLIENT_METRICS_PATH,
            "static_configs": [{"targets": scrape_targets(addresses, api_port)}],
        }
    ]
    if machine_metrics:
        jobs.append(
            {
                "job_name": MACHINE_JOB,
                "static_configs": [{"targets": scrape_targets(addresses, metrics_port)}],
            }
        )
    return {
        "global": {"scrape_interval": scrape_interval, "evaluation_interval": scrape_interval},
        "scrape_configs": jobs,
    }


def render_scrape_config(addresses: Iterable[str], **kw) -> str:
    """
    Prometheus config for the given host addresses. The same address set
    always renders to the same text, whatever order it comes in.
    """
    return yaml.safe_dump(build_scrape_config(addresses, **kw), sort_keys=False, default_flow_style=False)
