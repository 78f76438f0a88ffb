"""
Domain models for the reconciler.

All models are re-exported here for convenient access:

    from converge.core.models import ResourceDeclaration, StateRecord, Plan
"""

from converge.core.models.operation import (
    Operation,
    OperationKind,
    Plan,
    generate_run_id,
)
from converge.core.models.project import (
    ExecutorSettings,
    LockSettings,
    ProjectConfig,
    ProviderSettings,
    RetrySettings,
)
from converge.core.models.resource import (
    DesiredState,
    Lifecycle,
    OutputBinding,
    ResourceDeclaration,
)
from converge.core.models.state import STATE_SCHEMA, StateDocument, StateRecord
from converge.core.models.value import UNKNOWN, Reference, fingerprint

__all__ = [
    "STATE_SCHEMA",
    "UNKNOWN",
    "DesiredState",
    "ExecutorSettings",
    "Lifecycle",
    "LockSettings",
    "Operation",
    "OperationKind",
    "OutputBinding",
    "Plan",
    "ProjectConfig",
    "ProviderSettings",
    "Reference",
    "ResourceDeclaration",
    "RetrySettings",
    "StateDocument",
    "StateRecord",
    "fingerprint",
    "generate_run_id",
]
