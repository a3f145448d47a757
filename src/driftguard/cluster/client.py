"""ClusterClient protocol and the built-in InMemoryClusterClient.

The ClusterClient protocol is the generic create/get/update/delete surface
the engine uses to reach policy documents on one cluster. Any object with
these methods satisfies it; no inheritance required.

Implementations translate backend errors at this boundary:
not-found is ``None`` (reads) or ``False`` (deletes), anything else raises
``TransientClusterError``. Every remote call must carry a bounded timeout.
"""

from __future__ import annotations

import copy
import threading
from typing import Any, Protocol, runtime_checkable

from driftguard.cluster.manifest import from_manifest, parse_listed, to_manifest
from driftguard.errors import TransientClusterError
from driftguard.models import PolicyDocument


@runtime_checkable
class ClusterClient(Protocol):
    """Read/mutate surface for policy documents on one cluster."""

    @property
    def name(self) -> str: ...

    def get_policy(self, name: str) -> PolicyDocument | None:
        """Return the named document, or None if it does not exist."""
        ...

    def list_policies(self) -> list[PolicyDocument]: ...

    def create_policy(self, document: PolicyDocument) -> None: ...

    def update_policy(self, document: PolicyDocument) -> None:
        """Replace the named document's metadata and spec."""
        ...

    def delete_policy(self, name: str) -> bool:
        """Delete the named document. Returns False if it did not exist."""
        ...

    def list_pods(self) -> list[dict[str, Any]]:
        """Return every pod as a camelCase manifest dict."""
        ...


class InMemoryClusterClient:
    """Cluster client backed by an in-process dict of manifests.

    Useful for dry-runs, demos, and tests. Documents round-trip through
    the wire format, and each write bumps a resourceVersion, so the
    engine sees the same shapes it would see from a real cluster.

    Failure injection: names in ``fail_reads``/``fail_writes`` raise
    ``TransientClusterError``; ``unreachable=True`` fails every call.
    """

    def __init__(
        self,
        name: str = "in-memory",
        policies: list[PolicyDocument] | None = None,
        pods: list[dict[str, Any]] | None = None,
    ) -> None:
        self._name = name
        self._lock = threading.Lock()
        self._objects: dict[str, dict[str, Any]] = {}
        self._version = 0
        self.pods: list[dict[str, Any]] = list(pods or [])
        self.fail_reads: set[str] = set()
        self.fail_writes: set[str] = set()
        self.unreachable = False
        self.mutations = 0
        for doc in policies or []:
            self._put(doc)
        self.mutations = 0

    @property
    def name(self) -> str:
        return self._name

    def get_policy(self, name: str) -> PolicyDocument | None:
        self._check(name, self.fail_reads)
        with self._lock:
            obj = self._objects.get(name)
            return from_manifest(copy.deepcopy(obj)) if obj is not None else None

    def list_policies(self) -> list[PolicyDocument]:
        self._check("*", self.fail_reads)
        with self._lock:
            objs = [copy.deepcopy(self._objects[n]) for n in sorted(self._objects)]
        return parse_listed(objs, self._name)

    def create_policy(self, document: PolicyDocument) -> None:
        self._check(document.name, self.fail_writes)
        with self._lock:
            if document.name in self._objects:
                raise TransientClusterError(
                    f"policy {document.name} already exists",
                    cluster=self._name,
                    resource=document.name,
                )
        self._put(document)

    def update_policy(self, document: PolicyDocument) -> None:
        self._check(document.name, self.fail_writes)
        with self._lock:
            if document.name not in self._objects:
                raise TransientClusterError(
                    f"policy {document.name} not found",
                    cluster=self._name,
                    resource=document.name,
                )
        self._put(document)

    def delete_policy(self, name: str) -> bool:
        self._check(name, self.fail_writes)
        with self._lock:
            if self._objects.pop(name, None) is None:
                return False
            self.mutations += 1
            return True

    def list_pods(self) -> list[dict[str, Any]]:
        self._check("pods", self.fail_reads)
        return copy.deepcopy(self.pods)

    def put_raw(self, manifest: dict[str, Any]) -> None:
        """Store *manifest* as-is, without parsing it."""
        with self._lock:
            self._objects[manifest["metadata"]["name"]] = copy.deepcopy(manifest)

    def raw(self, name: str) -> dict[str, Any] | None:
        """Return the stored manifest (including server metadata)."""
        with self._lock:
            obj = self._objects.get(name)
            return copy.deepcopy(obj) if obj is not None else None

    # --- Private ---

    def _put(self, document: PolicyDocument) -> None:
        manifest = to_manifest(document)
        with self._lock:
            self._version += 1
            self.mutations += 1
            manifest["metadata"]["resourceVersion"] = str(self._version)
            manifest["metadata"]["uid"] = f"{self._name}-{document.name}"
            self._objects[document.name] = manifest

    def _check(self, resource: str, failing: set[str]) -> None:
        if self.unreachable or resource in failing:
            raise TransientClusterError(
                f"cluster {self._name} unavailable for {resource}",
                cluster=self._name,
                resource=resource,
            )
