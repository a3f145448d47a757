"""Structural validation of policy documents.

Runs before any document is sent to a cluster. Every check for a document
runs to completion, and ``validate_batch`` reports every offending document
in one pass. Pure: no I/O, no mutation.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field

from driftguard.errors import ConfigError
from driftguard.models import (
    MatchResources,
    PolicyDocument,
    PolicyRule,
    ValidationFailureAction,
)

MAX_NAME_LENGTH = 253
MAX_RULE_NAME_LENGTH = 63

_DNS_SUBDOMAIN = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?(\.[a-z0-9]([-a-z0-9]*[a-z0-9])?)*$")
_DNS_LABEL = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$")


@dataclass(frozen=True)
class DocumentErrors:
    """All validation errors for one document in a batch."""

    index: int
    policy: str
    errors: list[str] = field(default_factory=list)

    def __str__(self) -> str:
        return f"policy[{self.index}] ({self.policy}): " + "; ".join(self.errors)


def is_dns_subdomain(name: str) -> bool:
    return 0 < len(name) <= MAX_NAME_LENGTH and bool(_DNS_SUBDOMAIN.match(name))


def is_dns_label(name: str) -> bool:
    return 0 < len(name) <= MAX_RULE_NAME_LENGTH and bool(_DNS_LABEL.match(name))


class PolicyValidator:
    """Validates policy documents against the structural invariants."""

    def validate(self, document: PolicyDocument) -> list[str]:
        """Return every error found in *document* (empty list means valid)."""
        errors: list[str] = []

        if not document.name:
            errors.append("metadata.name is required")
        elif len(document.name) > MAX_NAME_LENGTH:
            errors.append(f"metadata.name is too long (max {MAX_NAME_LENGTH} characters)")
        elif not is_dns_subdomain(document.name):
            errors.append(
                "metadata.name must be a valid DNS subdomain "
                "(lowercase alphanumeric, '-', '.')"
            )

        action = document.validation_failure_action
        if action is not None and action not in set(ValidationFailureAction):
            errors.append(
                f"validationFailureAction must be 'Enforce' or 'Audit', got '{action}'"
            )

        if not document.rules:
            errors.append("spec.rules is required and must contain at least one rule")

        seen: set[str] = set()
        for i, rule in enumerate(document.rules):
            if rule.name and rule.name in seen:
                errors.append(f"rule[{i}]: duplicate rule name '{rule.name}'")
            seen.add(rule.name)
            errors.extend(f"rule[{i}]: {e}" for e in self._validate_rule(rule))

        return errors

    def is_valid(self, document: PolicyDocument) -> bool:
        return not self.validate(document)

    def validate_batch(self, documents: list[PolicyDocument]) -> list[DocumentErrors]:
        """Validate all documents; one entry per invalid document.

        Document names must also be unique within the batch.
        """
        results: list[DocumentErrors] = []
        seen: set[str] = set()
        for i, doc in enumerate(documents):
            errors = self.validate(doc)
            if doc.name and doc.name in seen:
                errors.append(f"duplicate policy name '{doc.name}' in batch")
            seen.add(doc.name)
            if errors:
                results.append(DocumentErrors(index=i, policy=doc.name, errors=errors))
        return results

    def validate_or_raise(self, documents: list[PolicyDocument]) -> None:
        """Raise ConfigError carrying every error if any document is invalid."""
        problems = self.validate_batch(documents)
        if problems:
            raise ConfigError(
                format_errors(problems),
                errors=[str(p) for p in problems],
            )

    # --- Private ---

    def _validate_rule(self, rule: PolicyRule) -> list[str]:
        errors: list[str] = []

        if not rule.name:
            errors.append("name is required")
        elif not is_dns_label(rule.name):
            errors.append(
                f"name '{rule.name}' must be lowercase alphanumeric with hyphens "
                f"(max {MAX_RULE_NAME_LENGTH} characters)"
            )

        errors.extend(self._validate_match(rule.match))

        if rule.validation is None and rule.mutation is None:
            errors.append("either validate or mutate is required")
        elif rule.validation is not None and rule.mutation is not None:
            errors.append("cannot have both validate and mutate in the same rule")

        if rule.validation is not None:
            v = rule.validation
            present = [
                label
                for label, value in (
                    ("pattern", v.pattern),
                    ("anyPattern", v.any_pattern),
                    ("deny", v.deny),
                )
                if value is not None and value != []
            ]
            if not present:
                errors.append("validate must have pattern, anyPattern, or deny")
            elif len(present) > 1:
                errors.append(
                    "validate can only have one of: pattern, anyPattern, or deny "
                    f"(found {', '.join(present)})"
                )

        if rule.mutation is not None:
            m = rule.mutation
            if m.patch_strategic_merge is None and m.patches_json6902 is None:
                errors.append("mutate must have patchStrategicMerge or patchesJson6902")

        return errors

    def _validate_match(self, match: MatchResources) -> list[str]:
        has_any = bool(match.match_any)
        has_all = bool(match.match_all)
        if not has_any and not has_all:
            return ["match.any or match.all is required"]
        if has_any and has_all:
            return ["match cannot have both 'any' and 'all'"]

        label = "any" if has_any else "all"
        filters = match.match_any if has_any else match.match_all
        errors: list[str] = []
        for i, f in enumerate(filters or []):
            if f.resources is None:
                errors.append(f"match.{label}[{i}]: resources is required")
            elif not f.resources.kinds:
                errors.append(f"match.{label}[{i}]: resources.kinds is required")
            elif any(not k for k in f.resources.kinds):
                errors.append(f"match.{label}[{i}]: empty kind in resources.kinds")
        return errors


def format_errors(problems: list[DocumentErrors]) -> str:
    """Render batch validation errors as a single message."""
    if not problems:
        return ""
    if len(problems) == 1:
        return f"policy validation failed: {problems[0]}"
    lines = "\n  - ".join(str(p) for p in problems)
    return f"policy validation failed with {len(problems)} errors:\n  - {lines}"
