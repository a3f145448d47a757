"""Tests for structural policy validation."""

from typing import Any

import pytest

from driftguard.errors import ConfigError
from driftguard.models import PolicyDocument
from driftguard.policy.validator import (
    MAX_NAME_LENGTH,
    PolicyValidator,
    format_errors,
    is_dns_label,
    is_dns_subdomain,
)

_MATCH_PODS = {"any": [{"resources": {"kinds": ["Pod"]}}]}


def _rule(**overrides: Any) -> dict[str, Any]:
    rule = {
        "name": "check-labels",
        "match": _MATCH_PODS,
        "validate": {"message": "app label required", "pattern": {"metadata": {"labels": {"app": "?*"}}}},
    }
    rule.update(overrides)
    return rule


def _doc(**overrides: Any) -> PolicyDocument:
    data: dict[str, Any] = {
        "name": "require-labels",
        "validationFailureAction": "Enforce",
        "rules": [_rule()],
    }
    data.update(overrides)
    return PolicyDocument.model_validate(data)


@pytest.fixture()
def validator() -> PolicyValidator:
    return PolicyValidator()


class TestNames:
    def test_dns_subdomain(self):
        assert is_dns_subdomain("require-labels.example.com")
        assert not is_dns_subdomain("Require-Labels")
        assert not is_dns_subdomain("-leading")
        assert not is_dns_subdomain("")

    def test_dns_label(self):
        assert is_dns_label("check-labels")
        assert not is_dns_label("check.labels")
        assert not is_dns_label("x" * 64)


class TestValidate:
    def test_valid_document(self, validator: PolicyValidator):
        assert validator.validate(_doc()) == []
        assert validator.is_valid(_doc())

    def test_compiled_documents_are_valid(self, validator: PolicyValidator, desired):
        assert validator.validate_batch(desired) == []

    def test_missing_name(self, validator: PolicyValidator):
        assert "metadata.name is required" in validator.validate(_doc(name=""))

    def test_uppercase_name(self, validator: PolicyValidator):
        errors = validator.validate(_doc(name="RequireLabels"))
        assert any("DNS subdomain" in e for e in errors)

    def test_name_too_long(self, validator: PolicyValidator):
        errors = validator.validate(_doc(name="a" * (MAX_NAME_LENGTH + 1)))
        assert any("too long" in e for e in errors)

    def test_bad_failure_action(self, validator: PolicyValidator):
        errors = validator.validate(_doc(validationFailureAction="Block"))
        assert any("validationFailureAction" in e for e in errors)

    def test_no_rules(self, validator: PolicyValidator):
        errors = validator.validate(_doc(rules=[]))
        assert any("at least one rule" in e for e in errors)

    def test_rule_without_validate_or_mutate(self, validator: PolicyValidator):
        errors = validator.validate(_doc(rules=[{"name": "r", "match": _MATCH_PODS}]))
        assert "rule[0]: either validate or mutate is required" in errors

    def test_rule_with_validate_and_mutate(self, validator: PolicyValidator):
        rule = _rule(mutate={"patchStrategicMerge": {"metadata": {"labels": {"a": "b"}}}})
        errors = validator.validate(_doc(rules=[rule]))
        assert any("both validate and mutate" in e for e in errors)

    def test_validate_with_two_modes(self, validator: PolicyValidator):
        rule = _rule(validate={"pattern": {"a": 1}, "deny": {"conditions": []}})
        errors = validator.validate(_doc(rules=[rule]))
        assert any("found pattern, deny" in e for e in errors)

    def test_validate_without_mode(self, validator: PolicyValidator):
        rule = _rule(validate={"message": "nothing to check"})
        errors = validator.validate(_doc(rules=[rule]))
        assert any("pattern, anyPattern, or deny" in e for e in errors)

    def test_mutate_without_patch(self, validator: PolicyValidator):
        rule = {"name": "r", "match": _MATCH_PODS, "mutate": {}}
        errors = validator.validate(_doc(rules=[rule]))
        assert any("patchStrategicMerge" in e for e in errors)

    def test_match_required(self, validator: PolicyValidator):
        errors = validator.validate(_doc(rules=[_rule(match={})]))
        assert "rule[0]: match.any or match.all is required" in errors

    def test_match_any_and_all(self, validator: PolicyValidator):
        match = {**_MATCH_PODS, "all": [{"resources": {"kinds": ["Pod"]}}]}
        errors = validator.validate(_doc(rules=[_rule(match=match)]))
        assert any("both 'any' and 'all'" in e for e in errors)

    def test_match_empty_kinds(self, validator: PolicyValidator):
        match = {"all": [{"resources": {"kinds": []}}]}
        errors = validator.validate(_doc(rules=[_rule(match=match)]))
        assert "rule[0]: match.all[0]: resources.kinds is required" in errors

    def test_duplicate_rule_names(self, validator: PolicyValidator):
        errors = validator.validate(_doc(rules=[_rule(), _rule()]))
        assert any("duplicate rule name 'check-labels'" in e for e in errors)

    def test_bad_rule_name(self, validator: PolicyValidator):
        errors = validator.validate(_doc(rules=[_rule(name="Check_Labels")]))
        assert any("lowercase alphanumeric" in e for e in errors)

    def test_collects_every_error(self, validator: PolicyValidator):
        doc = _doc(
            name="Bad Name",
            validationFailureAction="Block",
            rules=[{"name": "r", "match": {}}],
        )
        assert len(validator.validate(doc)) == 4


class TestBatch:
    def test_reports_every_invalid_document(self, validator: PolicyValidator):
        docs = [_doc(), _doc(name="BAD"), _doc(name="other", rules=[])]
        problems = validator.validate_batch(docs)
        assert [p.index for p in problems] == [1, 2]
        assert problems[0].policy == "BAD"

    def test_duplicate_document_names(self, validator: PolicyValidator):
        problems = validator.validate_batch([_doc(), _doc()])
        assert len(problems) == 1
        assert "duplicate policy name" in problems[0].errors[0]

    def test_validate_or_raise_carries_all_errors(self, validator: PolicyValidator):
        with pytest.raises(ConfigError) as exc_info:
            validator.validate_or_raise([_doc(name="BAD"), _doc(name="ALSO-BAD")])
        assert len(exc_info.value.errors) == 2
        assert "2 errors" in str(exc_info.value)

    def test_validate_or_raise_passes(self, validator: PolicyValidator):
        validator.validate_or_raise([_doc()])

    def test_format_errors_single(self, validator: PolicyValidator):
        problems = validator.validate_batch([_doc(name="BAD")])
        assert format_errors(problems).startswith("policy validation failed: policy[0] (BAD)")

    def test_format_errors_empty(self):
        assert format_errors([]) == ""
