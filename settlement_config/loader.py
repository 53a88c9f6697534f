"""
Configuration loader.

Reads a YAML file into ``SettlementConfig`` and applies environment
overrides.

Sources, lowest precedence first:

* dataclass defaults
* the YAML file at ``path``, or at ``$SETTLEMENT_CONFIG`` when no path is given
* ``SETTLEMENT_DATABASE_URL`` and ``SETTLEMENT_APPROVAL_WORKFLOW``

Failure modes:

* Missing file named explicitly or via the env var -> ``FileNotFoundError``.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Invalid values  -> ``ValueError`` from ``SettlementConfig``.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml

from settlement_config.schema import SettlementConfig

CONFIG_PATH_ENV = "SETTLEMENT_CONFIG"
DATABASE_URL_ENV = "SETTLEMENT_DATABASE_URL"
APPROVAL_WORKFLOW_ENV = "SETTLEMENT_APPROVAL_WORKFLOW"

_TRUE = frozenset({"1", "true", "yes", "on"})
_FALSE = frozenset({"0", "false", "no", "off"})


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a YAML mapping from ``path``.

    An empty file yields an empty dict.  A file whose top level is not a
    mapping is a ``ValueError``.
    """
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{path}: top level must be a mapping, got {type(data).__name__}")
    settlement = data.get("settlement", data)
    if not isinstance(settlement, dict):
        raise ValueError(f"{path}: 'settlement' must be a mapping")
    return dict(settlement)


def parse_bool(value: str, name: str) -> bool:
    lowered = value.strip().lower()
    if lowered in _TRUE:
        return True
    if lowered in _FALSE:
        return False
    raise ValueError(f"{name} must be a boolean flag, got {value!r}")


def load_config(
    path: str | Path | None = None,
    env: Mapping[str, str] | None = None,
) -> SettlementConfig:
    """Load configuration from ``path`` (or ``$SETTLEMENT_CONFIG``) plus env overrides."""
    env = os.environ if env is None else env

    data: dict[str, Any] = {}
    source = path if path is not None else env.get(CONFIG_PATH_ENV)
    if source:
        data = load_yaml_file(Path(source))

    if env.get(DATABASE_URL_ENV):
        data["database_url"] = env[DATABASE_URL_ENV]
    if env.get(APPROVAL_WORKFLOW_ENV):
        data["approval_workflow_enabled"] = parse_bool(
            env[APPROVAL_WORKFLOW_ENV], APPROVAL_WORKFLOW_ENV,
        )

    return SettlementConfig.from_dict(data)
