# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/nodefleet/config/loader.py

import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from .models import ProvisionRequest

log = logging.getLogger("nodefleet")


def _deep_merge(base: dict, override: dict) -> dict:
    """
    Recursively merge *override* into *base* (mutates base).
    Only overwrites when the override value is non-empty.
    """
    for key, value in override.items():
        if (
            key in base
            and isinstance(base[key], dict)
            and isinstance(value, dict)
        ):
            _deep_merge(base[key], value)
        else:
            if value not in (None, ""):
                base[key] = value
    return base


def _find_secrets_file(request_path: Path) -> Path | None:
    """
    Locate secrets.yaml using this priority:

    1. NODEFLEET_SECRETS_FILE environment variable (explicit override)
    2. secrets.yaml in the same directory as the request file
    """
    env = os.environ.get("NODEFLEET_SECRETS_FILE")
    if env:
        p = Path(env)
        if p.is_file():
            return p
        log.warning("NODEFLEET_SECRETS_FILE=%s does not exist, skipping", env)
        return None

    p = request_path.parent / "secrets.yaml"
    if p.is_file():
        return p

    return None


def _load_yaml(path: Path) -> dict:
    """Load a YAML file, expanding ${ENV_VAR} references."""
    raw = path.read_text()
    expanded = os.path.expandvars(raw)
    return yaml.safe_load(expanded) or {}


def load_request_data(path: str | Path) -> Dict[str, Any]:
    path = Path(path)
    data = _load_yaml(path)

    secrets_path = _find_secrets_file(path)
    if secrets_path:
        log.debug("Merging secrets from %s", secrets_path)
        _deep_merge(data, _load_yaml(secrets_path))
    else:
        log.debug("No secrets.yaml found, proceeding without secrets merge")
    return data


def load_request(
    path: str | Path | None = None,
    overrides: Optional[Dict[str, Any]] = None,
) -> ProvisionRequest:
    """
    Build the provisioning request.

    Values come from an optional YAML request file (with ``${ENV}`` expansion
    and an optional ``secrets.yaml`` merged on top), then from *overrides*,
    which the CLI fills from its flags. Empty overrides never clobber file
    values.
    """
    data: Dict[str, Any] = load_request_data(path) if path else {}
    if overrides:
        _deep_merge(data, overrides)
    return ProvisionRequest.model_validate(data)
