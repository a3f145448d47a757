"""Cluster boundary: wire format, clients and the cluster accessor.

Clients: InMemoryClusterClient, KubernetesClusterClient.
"""

from driftguard.cluster.client import ClusterClient, InMemoryClusterClient
from driftguard.cluster.manifest import from_manifest, to_manifest

__all__ = [
    "ClusterClient",
    "InMemoryClusterClient",
    "from_manifest",
    "to_manifest",
]
