"""Remediation strategy: the gate evaluated before any remediation attempt.

A strategy combines namespace scoping, maintenance windows and exemptions
into one value. It never changes what counts as drift; it only decides
whether the remediator may act on a given event right now.
"""

from __future__ import annotations

import fnmatch
from datetime import UTC, datetime

from pydantic import BaseModel, Field, field_validator

from driftguard.models import DriftEvent, as_utc


class TimeWindow(BaseModel):
    """A window during which remediation may run.

    days: 0=Monday, 6=Sunday (None means every day)
    hours: 0-23, inclusive, UTC
    """

    days: list[int] | None = None
    start_hour: int = Field(0, ge=0, le=23)
    end_hour: int = Field(23, ge=0, le=23)

    def contains(self, timestamp: datetime) -> bool:
        timestamp = as_utc(timestamp).astimezone(UTC)
        day_ok = self.days is None or timestamp.weekday() in self.days
        if self.start_hour <= self.end_hour:
            hour_ok = self.start_hour <= timestamp.hour <= self.end_hour
        else:
            # Wraps midnight (e.g., 22-06)
            hour_ok = timestamp.hour >= self.start_hour or timestamp.hour <= self.end_hour
        return day_ok and hour_ok


class Exemption(BaseModel):
    """Resources exempt from remediation. Name supports glob patterns."""

    kind: str | None = None
    name: str = "*"
    namespace: str | None = None
    reason: str = ""
    expires_at: datetime | None = None

    @field_validator("expires_at")
    @classmethod
    def _expiry_is_utc(cls, value: datetime | None) -> datetime | None:
        return as_utc(value) if value is not None else None

    def matches(self, event: DriftEvent, now: datetime) -> bool:
        if self.expires_at is not None and as_utc(now) > self.expires_at:
            return False
        ref = event.resource
        if self.kind is not None and ref.kind != self.kind:
            return False
        if self.namespace is not None and ref.namespace != self.namespace:
            return False
        return fnmatch.fnmatch(ref.name, self.name)


class RemediationStrategy(BaseModel):
    """Namespace scope, maintenance windows and exemptions for remediation.

    An empty strategy blocks nothing.
    """

    include_namespaces: list[str] = Field(default_factory=list)
    exclude_namespaces: list[str] = Field(default_factory=list)
    time_windows: list[TimeWindow] = Field(default_factory=list)
    exemptions: list[Exemption] = Field(default_factory=list)

    def blocked_reason(self, event: DriftEvent, now: datetime) -> str | None:
        """Return why *event* may not be remediated at *now*, or None."""
        namespace = event.resource.namespace
        if namespace is not None:
            if namespace in self.exclude_namespaces:
                return f"namespace {namespace} is excluded from remediation"
            if self.include_namespaces and namespace not in self.include_namespaces:
                return f"namespace {namespace} is outside the remediation scope"

        if self.time_windows and not any(w.contains(now) for w in self.time_windows):
            return f"outside remediation windows at {now.isoformat()}"

        for exemption in self.exemptions:
            if exemption.matches(event, now):
                reason = exemption.reason or "no reason given"
                return f"{event.resource.path} is exempt: {reason}"

        return None
