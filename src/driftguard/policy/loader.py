"""YAML loading for specifications and policy documents.

- ``load_specification``: one ClusterSpecification from a YAML file.
- ``load_policy_documents``: ClusterPolicy manifests from a multi-document
  YAML file, or from every ``*.yaml``/``*.yml`` file in a directory.
- ``dump_policy_documents``: the reverse, as a multi-document YAML string.
"""

from __future__ import annotations

from collections.abc import Iterable
from pathlib import Path

import yaml
from pydantic import ValidationError

from driftguard.cluster.manifest import from_manifest, to_manifest
from driftguard.errors import ConfigError
from driftguard.models import PolicyDocument
from driftguard.specification import ClusterSpecification


def _read_yaml(path: Path, *, multi: bool = False):  # type: ignore[no-untyped-def]
    try:
        text = path.read_text(encoding="utf-8")
        if multi:
            return [d for d in yaml.safe_load_all(text) if d is not None]
        return yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e
    except OSError as e:
        raise ConfigError(f"Cannot read {path}: {e}") from e


def load_specification(path: str | Path) -> ClusterSpecification:
    """Load and validate a cluster specification from a YAML file.

    Raises:
        ConfigError: If the file cannot be read, parsed, or validated.
    """
    path = Path(path)
    if not path.is_file():
        raise ConfigError(f"Specification file not found: {path}")

    raw = _read_yaml(path)
    if not isinstance(raw, dict):
        raise ConfigError(f"Expected a YAML mapping in {path}, got {type(raw).__name__}")

    try:
        return ClusterSpecification.model_validate(raw)
    except ValidationError as e:
        raise ConfigError(f"Invalid specification in {path}: {e}") from e


def load_policy_documents(path: str | Path) -> list[PolicyDocument]:
    """Load ClusterPolicy manifests from a file or directory.

    Documents are returned in file order (directories: sorted by filename).
    A ``kind: List`` wrapper is unpacked.

    Raises:
        ConfigError: Missing path, invalid YAML, or a manifest that is not
            a parseable ClusterPolicy.
    """
    path = Path(path)
    if path.is_dir():
        files = sorted(list(path.glob("*.yaml")) + list(path.glob("*.yml")))
    elif path.is_file():
        files = [path]
    else:
        raise ConfigError(f"Policy path not found: {path}")

    documents: list[PolicyDocument] = []
    for file in files:
        for i, raw in enumerate(_read_yaml(file, multi=True)):
            items = raw.get("items", []) if isinstance(raw, dict) and raw.get("kind") == "List" else [raw]
            for item in items:
                try:
                    documents.append(from_manifest(item))
                except ConfigError as e:
                    raise ConfigError(f"{file} (document {i}): {e}") from e
    return documents


def dump_policy_documents(documents: Iterable[PolicyDocument]) -> str:
    """Render documents as multi-document YAML (ClusterPolicy manifests)."""
    return yaml.safe_dump_all(
        [to_manifest(d) for d in documents],
        default_flow_style=False,
        sort_keys=False,
    )
