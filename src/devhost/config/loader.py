# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/devhost/config/loader.py

import logging
import os
from pathlib import Path

import yaml

from .models import SetupConfig

log = logging.getLogger("devhost")


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

    1. DEVHOST_SECRETS_FILE environment variable (explicit override)
    2. secrets.yaml in the same directory as the setup config
    """
    env = os.environ.get("DEVHOST_SECRETS_FILE")
    if env:
        p = Path(env)
        if p.is_file():
            return p
        log.warning("DEVHOST_SECRETS_FILE=%s does not exist, skipping", env)
        return None

    p = config_path.parent / "secrets.yaml"
    if p.is_file():
        return p

    return None


def _load_yaml(path: Path) -> dict:
    """Load a YAML file, expanding ${ENV_VAR} references."""
    raw = path.read_text()
    expanded = os.path.expandvars(raw)
    return yaml.safe_load(expanded) or {}


def load_config(path: str | Path | None = None) -> SetupConfig:
    """
    Load and validate a devhost YAML config.

    With no path every section falls back to its defaults. Passwords and
    tokens can live in a ``secrets.yaml`` that mirrors the config layout; it is
    deep-merged before validation. ``${ENV_VAR}`` placeholders are resolved in
    both files.
    """
    if path is None:
        return SetupConfig()

    path = Path(path)
    data = _load_yaml(path)

    secrets_path = _find_secrets_file(path)
    if secrets_path:
        log.debug("Merging secrets from %s", secrets_path)
        _deep_merge(data, _load_yaml(secrets_path))
    else:
        log.debug("No secrets.yaml found, proceeding without secrets merge")

    return SetupConfig.model_validate(data)
