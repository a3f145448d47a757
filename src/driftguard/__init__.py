"""DriftGuard: policy drift detection, remediation and fleet sync for Kubernetes."""

__version__ = "0.4.0"

from driftguard.cluster.accessor import (
    ClusterHandle,
    ClusterTarget,
    KubernetesClusterAccessor,
)
from driftguard.cluster.client import ClusterClient, InMemoryClusterClient
from driftguard.cluster.k8s_client import KubernetesClusterClient
from driftguard.config import DriftGuardConfig, find_config, load_config
from driftguard.drift.detector import Detector
from driftguard.drift.history import (
    FileHistoryStore,
    HistoryStore,
    MemoryHistoryStore,
    open_history_store,
)
from driftguard.drift.monitor import Monitor, MonitorConfig, MonitorTarget
from driftguard.drift.remediator import RemediateOptions, Remediator
from driftguard.drift.strategy import RemediationStrategy
from driftguard.errors import (
    ClusterUnreachableError,
    ConfigError,
    DriftGuardError,
    FatalSetupError,
    FleetSyncError,
    HistoryError,
    TransientClusterError,
)
from driftguard.models import (
    DriftEvent,
    DriftKind,
    DriftReport,
    DriftStatus,
    DriftType,
    PolicyDocument,
    Severity,
    UpdateMode,
)
from driftguard.policy.compiler import PolicyCompiler
from driftguard.policy.validator import PolicyValidator
from driftguard.sync.synchronizer import PolicySynchronizer

__all__ = [
    "ClusterClient",
    "ClusterHandle",
    "ClusterTarget",
    "ClusterUnreachableError",
    "ConfigError",
    "Detector",
    "DriftEvent",
    "DriftGuardConfig",
    "DriftGuardError",
    "DriftKind",
    "DriftReport",
    "DriftStatus",
    "DriftType",
    "FatalSetupError",
    "FileHistoryStore",
    "find_config",
    "FleetSyncError",
    "HistoryError",
    "HistoryStore",
    "InMemoryClusterClient",
    "KubernetesClusterAccessor",
    "KubernetesClusterClient",
    "load_config",
    "MemoryHistoryStore",
    "Monitor",
    "MonitorConfig",
    "MonitorTarget",
    "open_history_store",
    "PolicyCompiler",
    "PolicyDocument",
    "PolicySynchronizer",
    "PolicyValidator",
    "RemediateOptions",
    "RemediationStrategy",
    "Remediator",
    "Severity",
    "TransientClusterError",
    "UpdateMode",
    "__version__",
]
