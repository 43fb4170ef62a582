# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/minilab/config/loader.py

import logging
import os
from pathlib import Path

import yaml
from pydantic import ValidationError

from ..errors import ConfigurationError
from .models import TopologyConfig

log = logging.getLogger("minilab")


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


def _find_secrets_file(config_path: Path) -> Path | None:
    """
    Locate secrets.yaml using this priority:

    1. MINILAB_SECRETS_FILE environment variable (explicit override)
    2. secrets.yaml in the same directory as the topology file
    """
    env = os.environ.get("MINILAB_SECRETS_FILE")
    if env:
        p = Path(env)
        if p.is_file():
            return p
        log.warning("MINILAB_SECRETS_FILE=%s does not exist, skipping", env)
        return None

    p = config_path.parent / "secrets.yaml"
    if p.is_file():
        return p

    return None


def _load_yaml(path: Path) -> dict:
    """Load a YAML file, expanding ${ENV_VAR} references."""
    try:
        raw = path.read_text()
    except OSError as e:
        raise ConfigurationError(f"Cannot read {path}: {e}") from e
    expanded = os.path.expandvars(raw)
    try:
        data = yaml.safe_load(expanded) or {}
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigurationError(f"{path} must contain a mapping at the top level")
    return data


def load_topology(path: str | Path) -> TopologyConfig:
    """
    Load and validate a topology file.

    Credentials are kept out of the topology by one of:

    **secrets.yaml**
        A file whose structure mirrors the topology (usually just the
        ``credentials:`` block). Discovered via ``MINILAB_SECRETS_FILE`` or
        next to the topology file, and deep-merged before validation.

    **environment variables**
        ``${ENV_VAR}`` placeholders anywhere in either file.
    """
    path = Path(path)
    data = _load_yaml(path)

    secrets_path = _find_secrets_file(path)
    if secrets_path:
        log.debug("Merging secrets from %s", secrets_path)
        _deep_merge(data, _load_yaml(secrets_path))
    else:
        log.debug("No secrets.yaml found, proceeding without secrets merge")

    try:
        return TopologyConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid topology {path}:\n{e}") from e
