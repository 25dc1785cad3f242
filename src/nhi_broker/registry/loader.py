"""Registry loader for registry.yaml."""

from __future__ import annotations

from pathlib import Path

import yaml

from nhi_broker.auth.trust import process_env_vars
from nhi_broker.registry.models import Registry


def load_registry(path: str | Path) -> Registry:
    registry_path = Path(path)
    if not registry_path.exists():
        raise FileNotFoundError(f"Registry file not found: {registry_path}")
    with registry_path.open("r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Registry file must contain a mapping: {registry_path}")
    return Registry.from_yaml(process_env_vars(data))
