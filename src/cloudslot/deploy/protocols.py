"""
Capability protocols for the remote collaborators of the orchestrator.

The orchestrator only talks to these interfaces; concrete clients live in
``cloudslot.clients`` and ``cloudslot.storage``.
"""

from pathlib import Path
from typing import Optional, Protocol, Union, runtime_checkable

from cloudslot.deploy.models import (
    Certificate,
    ConfigChangeParameters,
    DeploymentSnapshot,
    NewDeploymentStatus,
    OperationResult,
    Slot,
    UpgradeParameters,
)


@runtime_checkable
class DeploymentService(Protocol):
    """Management operations against one deployment slot."""

    def get_snapshot(self, service_name: str, slot: Slot) -> Optional[DeploymentSnapshot]:
        """
        Read the current state of the slot.

        Promises:
        - Raises NotFoundError (or returns None) when no deployment exists
        - Never mutates remote state
        """
        ...

    def submit_upgrade(self, service_name: str, slot: Slot, parameters: UpgradeParameters) -> OperationResult:
        ...

    def submit_config_change(
        self, service_name: str, slot: Slot, parameters: ConfigChangeParameters
    ) -> OperationResult:
        ...

    def submit_status_change(
        self, service_name: str, slot: Slot, status: NewDeploymentStatus
    ) -> OperationResult:
        ...


@runtime_checkable
class BlobStore(Protocol):
    """Object storage used to stage local packages."""

    def upload(self, account_hint: str, local_path: Union[str, Path]) -> str:
        """Upload a file and return an http(s) URI the management service can fetch."""
        ...

    def delete(self, account_hint: str, uri: str) -> None:
        ...


@runtime_checkable
class CertificateStore(Protocol):
    def upload_certificate(self, service_name: str, certificate: Certificate) -> Optional[OperationResult]:
        ...


@runtime_checkable
class ConfigurationReader(Protocol):
    def read(self, path: Union[str, Path]) -> str:
        """Return the raw text of a service configuration file."""
        ...
