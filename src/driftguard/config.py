"""Config file loading and auto-discovery for DriftGuard.

Searches for ``driftguard.yaml`` in the current directory and parent
directories, parses it, and resolves all relative paths against the
config file's location.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from driftguard.errors import ConfigError

CONFIG_FILENAME = "driftguard.yaml"

HISTORY_TYPES = ("memory", "file")
UPDATE_MODES = ("replace", "merge")


@dataclass(frozen=True)
class TargetConfig:
    """One fleet member reached through a local kubeconfig."""

    name: str
    kubeconfig: str | None = None
    context: str | None = None
    allow_enforcement: bool = True


@dataclass(frozen=True)
class DriftGuardConfig:
    """Parsed DriftGuard project configuration."""

    config_path: Path | None = None
    spec: str | None = None
    kubeconfig: str | None = None
    context: str | None = None
    history_type: str = "memory"
    history_path: str | None = None
    interval_seconds: float = 300.0
    auto_remediate: bool = False
    remediate_types: tuple[str, ...] | None = None
    force: bool = False
    update_mode: str = "replace"
    max_workers: int = 8
    request_timeout: float = 10.0
    audit_log: str | None = None
    targets: tuple[TargetConfig, ...] = ()


def find_config(start: Path | None = None) -> Path | None:
    """Walk from *start* (default ``cwd()``) up to the filesystem root.

    Returns the first ``driftguard.yaml`` found, or ``None``.
    """
    current = (start or Path.cwd()).resolve()
    while True:
        candidate = current / CONFIG_FILENAME
        if candidate.is_file():
            return candidate
        parent = current.parent
        if parent == current:
            return None
        current = parent


def load_config(
    path: str | Path | None = None,
    *,
    auto_discover: bool = True,
) -> DriftGuardConfig:
    """Load a DriftGuard config file.

    Resolution order:

    1. Explicit *path* (error if it doesn't exist).
    2. Auto-discover by walking parent directories.
    3. Return an empty ``DriftGuardConfig`` (all defaults).
    """
    config_path: Path | None = None

    if path is not None:
        config_path = Path(path).resolve()
        if not config_path.is_file():
            msg = f"Config file not found: {config_path}"
            raise FileNotFoundError(msg)
    elif auto_discover:
        config_path = find_config()

    if config_path is None:
        return DriftGuardConfig()

    return _parse_config(config_path)


def _parse_config(config_path: Path) -> DriftGuardConfig:
    """Read and parse a YAML config file, resolving relative paths."""
    try:
        data = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {config_path}: {e}") from e

    if not isinstance(data, dict):
        msg = f"Expected a YAML mapping in {config_path}, got {type(data).__name__}"
        raise ConfigError(msg)

    base = config_path.parent
    errors: list[str] = []

    def _resolve(value: Any) -> str | None:
        if value is None:
            return None
        return str((base / Path(str(value)).expanduser()).resolve())

    history_type = str(data.get("history_type", "memory"))
    if history_type not in HISTORY_TYPES:
        errors.append(f"history_type must be one of {', '.join(HISTORY_TYPES)}")
    update_mode = str(data.get("update_mode", "replace"))
    if update_mode not in UPDATE_MODES:
        errors.append(f"update_mode must be one of {', '.join(UPDATE_MODES)}")

    remediate_types = data.get("remediate_types")
    if remediate_types is not None and not isinstance(remediate_types, list):
        errors.append("remediate_types must be a list")

    targets: list[TargetConfig] = []
    for i, entry in enumerate(data.get("targets") or []):
        if not isinstance(entry, dict) or not entry.get("name"):
            errors.append(f"targets[{i}] must be a mapping with a name")
            continue
        targets.append(TargetConfig(
            name=str(entry["name"]),
            kubeconfig=_resolve(entry.get("kubeconfig")),
            context=entry.get("context"),
            allow_enforcement=bool(entry.get("allow_enforcement", True)),
        ))

    try:
        interval = float(data.get("interval_seconds", 300.0))
        max_workers = int(data.get("max_workers", 8))
        timeout = float(data.get("request_timeout", 10.0))
    except (TypeError, ValueError) as e:
        errors.append(f"invalid number: {e}")
        interval, max_workers, timeout = 300.0, 8, 10.0

    if errors:
        raise ConfigError(f"Invalid config {config_path}", errors=errors)

    return DriftGuardConfig(
        config_path=config_path,
        spec=_resolve(data.get("spec")),
        kubeconfig=_resolve(data.get("kubeconfig")),
        context=data.get("context"),
        history_type=history_type,
        history_path=_resolve(data.get("history_path")),
        interval_seconds=interval,
        auto_remediate=bool(data.get("auto_remediate", False)),
        remediate_types=tuple(str(t) for t in remediate_types) if remediate_types else None,
        force=bool(data.get("force", False)),
        update_mode=update_mode,
        max_workers=max_workers,
        request_timeout=timeout,
        audit_log=_resolve(data.get("audit_log")),
        targets=tuple(targets),
    )
