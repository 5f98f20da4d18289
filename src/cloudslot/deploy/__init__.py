"""
Deployment change orchestration.

- PackageStager: local path or URI -> fetchable package URI
- ExtensionConfigBuilder: validate and merge extension inputs
- DeploymentMutator: runs one Upgrade / ChangeConfig / ChangeStatus request
- RetryingInvoker: retries remote calls on transient failure
"""

from .models import (
    ChangeKind,
    DeploymentChangeRequest,
    DeploymentSnapshot,
    ExtensionConfiguration,
    ExtensionDescriptor,
    MutationOutcome,
    MutationState,
    Slot,
    StagedPackage,
    UpgradeMode,
)
from .extensions import ExtensionConfigBuilder
from .mutator import DeploymentMutator
from .retry import RetryingInvoker
from .staging import PackageStager

__all__ = [
    "ChangeKind",
    "DeploymentChangeRequest",
    "DeploymentSnapshot",
    "ExtensionConfiguration",
    "ExtensionDescriptor",
    "MutationOutcome",
    "MutationState",
    "Slot",
    "StagedPackage",
    "UpgradeMode",
    "ExtensionConfigBuilder",
    "DeploymentMutator",
    "RetryingInvoker",
    "PackageStager",
]
