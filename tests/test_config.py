"""Tests for the DriftGuard config loader (driftguard.yaml)."""

from pathlib import Path

import pytest

from driftguard.config import DriftGuardConfig, TargetConfig, find_config, load_config
from driftguard.errors import ConfigError

# --- find_config ---


class TestFindConfig:
    def test_finds_in_start_dir(self, tmp_path: Path):
        cfg = tmp_path / "driftguard.yaml"
        cfg.write_text("spec: ./cluster-spec.yaml\n", encoding="utf-8")
        assert find_config(tmp_path) == cfg

    def test_finds_in_parent(self, tmp_path: Path):
        cfg = tmp_path / "driftguard.yaml"
        cfg.write_text("spec: ./cluster-spec.yaml\n", encoding="utf-8")
        child = tmp_path / "sub" / "deep"
        child.mkdir(parents=True)
        assert find_config(child) == cfg

    def test_returns_none_when_missing(self, tmp_path: Path):
        assert find_config(tmp_path) is None


# --- load_config ---


class TestLoadConfig:
    def test_explicit_missing_path(self, tmp_path: Path):
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path / "driftguard.yaml")

    def test_no_discovery(self, tmp_path: Path, monkeypatch):
        (tmp_path / "driftguard.yaml").write_text("force: true\n", encoding="utf-8")
        monkeypatch.chdir(tmp_path)
        assert load_config(auto_discover=False) == DriftGuardConfig()

    def test_auto_discovery(self, tmp_path: Path, monkeypatch):
        (tmp_path / "driftguard.yaml").write_text("force: true\n", encoding="utf-8")
        monkeypatch.chdir(tmp_path)
        assert load_config().force

    def test_empty_file(self, tmp_path: Path):
        path = tmp_path / "driftguard.yaml"
        path.write_text("", encoding="utf-8")
        cfg = load_config(path)
        assert cfg.config_path == path.resolve()
        assert cfg.history_type == "memory"
        assert cfg.interval_seconds == 300.0

    def test_full_config(self, tmp_path: Path):
        path = tmp_path / "driftguard.yaml"
        path.write_text(
            "spec: specs/prod.yaml\n"
            "kubeconfig: ~/.kube/config\n"
            "context: prod\n"
            "history_type: file\n"
            "history_path: state/history.json\n"
            "interval_seconds: 60\n"
            "auto_remediate: true\n"
            "remediate_types: [policy]\n"
            "force: true\n"
            "update_mode: merge\n"
            "max_workers: 4\n"
            "request_timeout: 2.5\n"
            "audit_log: audit.jsonl\n"
            "targets:\n"
            "  - name: east\n"
            "    kubeconfig: kube/east\n"
            "    context: east\n"
            "  - name: west\n"
            "    allow_enforcement: false\n",
            encoding="utf-8",
        )
        cfg = load_config(path)
        base = tmp_path.resolve()
        assert cfg.spec == str(base / "specs" / "prod.yaml")
        assert cfg.kubeconfig == str(Path("~/.kube/config").expanduser().resolve())
        assert cfg.context == "prod"
        assert cfg.history_type == "file"
        assert cfg.history_path == str(base / "state" / "history.json")
        assert cfg.interval_seconds == 60.0
        assert cfg.auto_remediate
        assert cfg.remediate_types == ("policy",)
        assert cfg.force
        assert cfg.update_mode == "merge"
        assert cfg.max_workers == 4
        assert cfg.request_timeout == 2.5
        assert cfg.audit_log == str(base / "audit.jsonl")
        assert cfg.targets == (
            TargetConfig(name="east", kubeconfig=str(base / "kube" / "east"), context="east"),
            TargetConfig(name="west", allow_enforcement=False),
        )

    def test_invalid_yaml(self, tmp_path: Path):
        path = tmp_path / "driftguard.yaml"
        path.write_text("spec: [unclosed\n", encoding="utf-8")
        with pytest.raises(ConfigError, match="Invalid YAML"):
            load_config(path)

    def test_not_a_mapping(self, tmp_path: Path):
        path = tmp_path / "driftguard.yaml"
        path.write_text("- a\n", encoding="utf-8")
        with pytest.raises(ConfigError, match="Expected a YAML mapping"):
            load_config(path)

    def test_collects_every_error(self, tmp_path: Path):
        path = tmp_path / "driftguard.yaml"
        path.write_text(
            "history_type: redis\n"
            "update_mode: patch\n"
            "remediate_types: policy\n"
            "targets: [{context: east}]\n"
            "interval_seconds: soon\n",
            encoding="utf-8",
        )
        with pytest.raises(ConfigError) as exc_info:
            load_config(path)
        assert len(exc_info.value.errors) == 5
