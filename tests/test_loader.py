"""Tests for YAML loading of specifications and policy documents."""

from pathlib import Path

import pytest
import yaml

from driftguard.cluster.manifest import to_manifest
from driftguard.errors import ConfigError
from driftguard.policy.loader import (
    dump_policy_documents,
    load_policy_documents,
    load_specification,
)


class TestLoadSpecification:
    def test_load(self, spec_file: Path, spec):
        assert load_specification(spec_file) == spec

    def test_missing_file(self, tmp_path: Path):
        with pytest.raises(ConfigError, match="not found"):
            load_specification(tmp_path / "nope.yaml")

    def test_not_a_mapping(self, tmp_path: Path):
        path = tmp_path / "spec.yaml"
        path.write_text("- a\n- b\n", encoding="utf-8")
        with pytest.raises(ConfigError, match="Expected a YAML mapping"):
            load_specification(path)

    def test_invalid_yaml(self, tmp_path: Path):
        path = tmp_path / "spec.yaml"
        path.write_text("metadata: [unclosed\n", encoding="utf-8")
        with pytest.raises(ConfigError, match="Invalid YAML"):
            load_specification(path)

    def test_missing_metadata(self, tmp_path: Path):
        path = tmp_path / "spec.yaml"
        path.write_text("kind: ClusterSpecification\n", encoding="utf-8")
        with pytest.raises(ConfigError, match="Invalid specification"):
            load_specification(path)


class TestLoadPolicyDocuments:
    def test_multi_document_file(self, tmp_path: Path, desired):
        path = tmp_path / "policies.yaml"
        path.write_text(dump_policy_documents(desired), encoding="utf-8")
        assert load_policy_documents(path) == desired

    def test_directory_sorted_by_filename(self, tmp_path: Path, desired):
        (tmp_path / "b.yaml").write_text(yaml.safe_dump(to_manifest(desired[0])), encoding="utf-8")
        (tmp_path / "a.yml").write_text(yaml.safe_dump(to_manifest(desired[1])), encoding="utf-8")
        (tmp_path / "notes.txt").write_text("ignored", encoding="utf-8")
        names = [d.name for d in load_policy_documents(tmp_path)]
        assert names == [desired[1].name, desired[0].name]

    def test_list_wrapper(self, tmp_path: Path, desired):
        path = tmp_path / "list.yaml"
        wrapper = {"apiVersion": "v1", "kind": "List", "items": [to_manifest(d) for d in desired[:3]]}
        path.write_text(yaml.safe_dump(wrapper), encoding="utf-8")
        assert len(load_policy_documents(path)) == 3

    def test_wrong_kind_names_file(self, tmp_path: Path):
        path = tmp_path / "deploy.yaml"
        path.write_text("kind: Deployment\nmetadata: {name: web}\n", encoding="utf-8")
        with pytest.raises(ConfigError, match="deploy.yaml \\(document 0\\)"):
            load_policy_documents(path)

    def test_missing_path(self, tmp_path: Path):
        with pytest.raises(ConfigError, match="not found"):
            load_policy_documents(tmp_path / "nope")

    def test_blank_documents_skipped(self, tmp_path: Path, desired):
        path = tmp_path / "policies.yaml"
        path.write_text("---\n" + dump_policy_documents(desired[:1]) + "---\n", encoding="utf-8")
        assert len(load_policy_documents(path)) == 1


class TestDump:
    def test_dump_is_multi_document(self, desired):
        docs = list(yaml.safe_load_all(dump_policy_documents(desired)))
        assert [d["metadata"]["name"] for d in docs] == [d.name for d in desired]
        assert all(d["kind"] == "ClusterPolicy" for d in docs)
