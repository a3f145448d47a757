"""Tests for compiling a specification into policy documents."""

import copy
from unittest.mock import MagicMock

import pytest

from conftest import EXPECTED_POLICIES, SPEC_DATA
from driftguard.errors import ConfigError
from driftguard.models import PROVENANCE_ANNOTATION, SPEC_ANNOTATION, ValidationFailureAction
from driftguard.policy.compiler import POLICY_MAP, PolicyCompiler, enabled_mappings
from driftguard.specification import ClusterSpecification


def _spec(**workloads) -> ClusterSpecification:
    data = copy.deepcopy(SPEC_DATA)
    data["spec"]["workloads"].update(workloads)
    return ClusterSpecification.model_validate(data)


class TestCompile:
    def test_documents_in_table_order(self, desired):
        assert [d.name for d in desired] == EXPECTED_POLICIES

    def test_provenance_annotations(self, desired):
        for doc in desired:
            assert doc.annotations[PROVENANCE_ANNOTATION] == "true"
            assert doc.annotations[SPEC_ANNOTATION] == "prod-baseline"
            assert doc.is_managed()

    def test_enforce_and_background(self, desired):
        for doc in desired:
            assert doc.validation_failure_action == "Enforce"
            assert doc.background is True

    def test_one_rule_matching_pods(self, desired):
        for doc in desired:
            assert len(doc.rules) == 1
            rule = doc.rules[0]
            assert rule.match.match_any is not None
            assert rule.match.match_any[0].resources.kinds == ["Pod"]

    def test_registry_patterns(self, desired):
        by_name = {d.name: d for d in desired}
        blocked = by_name["block-image-registries"].rules[0].validation.pattern
        allowed = by_name["restrict-image-registries"].rules[0].validation.pattern
        assert blocked == {"spec": {"containers": [{"image": "!docker.io/*"}]}}
        assert allowed == {"spec": {"containers": [{"image": "registry.example.com/*"}]}}

    def test_blocked_description_names_registries(self, desired):
        doc = next(d for d in desired if d.name == "block-image-registries")
        assert doc.annotations["policies.kyverno.io/description"] == "Block images from: docker.io"

    def test_require_digests(self):
        spec = _spec(images={"requireDigests": True})
        names = [d.name for d in PolicyCompiler().compile(spec)]
        assert "require-image-digests" in names
        assert "block-image-registries" not in names

    def test_string_values_enable_requirements(self):
        spec = _spec(containers={
            "required": [{"key": "securityContext.runAsNonRoot", "value": "true"}],
        })
        assert [m.name for m in enabled_mappings(spec)][:1] == ["require-run-as-non-root"]

    def test_empty_spec(self):
        spec = ClusterSpecification.model_validate({"metadata": {"name": "empty"}})
        assert PolicyCompiler().compile(spec) == []

    def test_audit_failure_action(self, spec):
        docs = PolicyCompiler(failure_action=ValidationFailureAction.AUDIT).compile(spec)
        assert {d.validation_failure_action for d in docs} == {"Audit"}

    def test_validation_failure_raises(self, spec):
        validator = MagicMock()
        validator.validate_or_raise.side_effect = ConfigError("bad", errors=["bad"])
        with pytest.raises(ConfigError):
            PolicyCompiler(validator=validator).compile(spec)

    def test_deterministic(self, spec):
        first = PolicyCompiler().compile(spec)
        second = PolicyCompiler().compile(spec)
        assert first == second


class TestPolicyMap:
    def test_names_unique(self):
        names = [m.name for m in POLICY_MAP]
        assert len(names) == len(set(names))
