"""Error taxonomy for DriftGuard.

Per-item failures (one policy read, one target sync) are embedded in the
result objects returned by the detector, remediator and synchronizer.
Only the conditions below are raised.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from driftguard.models import FleetSyncResult


class DriftGuardError(Exception):
    """Base class for all DriftGuard errors."""


class ConfigError(DriftGuardError):
    """A malformed policy document or configuration.

    Raised before any network call. ``errors`` holds every problem found,
    not only the first one.
    """

    def __init__(self, message: str, errors: list[str] | None = None) -> None:
        super().__init__(message)
        self.errors: list[str] = list(errors or [])


class TransientClusterError(DriftGuardError):
    """A single read or write against one cluster failed.

    Skipped for the current cycle and retried on the next one.
    """

    def __init__(
        self,
        message: str,
        cluster: str = "",
        resource: str = "",
    ) -> None:
        super().__init__(message)
        self.cluster = cluster
        self.resource = resource


class ClusterUnreachableError(TransientClusterError):
    """Every read of a detection cycle failed."""


class FatalSetupError(DriftGuardError):
    """Setup failed (no cluster accessor, unusable history backend)."""


class HistoryError(FatalSetupError):
    """The drift history backend cannot be opened, read or written."""


class FleetSyncError(DriftGuardError):
    """A fleet-wide sync failed on every target."""

    def __init__(self, message: str, result: FleetSyncResult) -> None:
        super().__init__(message)
        self.result = result
