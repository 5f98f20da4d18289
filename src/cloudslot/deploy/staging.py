"""Resolve deployment package references into fetchable URIs."""

from __future__ import annotations

import threading
from pathlib import Path
from typing import Optional

import structlog

from cloudslot.core.exceptions import CleanupWarning, ConfigurationError
from cloudslot.deploy.models import StagedPackage
from cloudslot.deploy.protocols import BlobStore
from cloudslot.deploy.retry import RetryingInvoker


logger = structlog.get_logger()


def is_remote_uri(source: str) -> bool:
    return source.strip().lower().startswith(("http://", "https://"))


class PackageStager:
    """Stages packages for a single storage account.

    Remote URIs pass through untouched. Local files are uploaded to the
    account's blob store and marked transient so the caller deletes them
    once the mutation has succeeded.
    """

    def __init__(
        self,
        blob_store: Optional[BlobStore],
        invoker: RetryingInvoker,
        account_hint: Optional[str] = None,
    ):
        self.blob_store = blob_store
        self.invoker = invoker
        self.account_hint = account_hint

    def check_preconditions(self, source: Optional[str]) -> None:
        """Raise ConfigurationError if ``stage(source)`` cannot succeed. No remote calls."""
        if source is None or not source.strip():
            raise ConfigurationError("Package source is empty", code="package_source_empty")
        if is_remote_uri(source):
            return
        if not self.account_hint:
            raise ConfigurationError(
                "Default storage account is not set; it is required to upload a local package",
                code="storage_account_not_set",
            )
        if self.blob_store is None:
            raise ConfigurationError("No blob store configured for package uploads", code="blob_store_not_set")

    def stage(self, source: Optional[str], cancel_event: Optional[threading.Event] = None) -> StagedPackage:
        self.check_preconditions(source)
        source = source.strip()

        if is_remote_uri(source):
            logger.info("Using remote package", uri=source)
            return StagedPackage(uri=source, is_transient=False)

        local_path = Path(source).expanduser()
        account = self.account_hint
        logger.info("Uploading package", path=str(local_path), account=account)
        uri = self.invoker.invoke(
            lambda: self.blob_store.upload(account, local_path),
            description="package upload",
            cancel_event=cancel_event,
        )
        logger.info("Package uploaded", uri=uri, account=account)
        return StagedPackage(uri=uri, is_transient=True, account_hint=account, local_path=str(local_path))

    def unstage(self, package: Optional[StagedPackage]) -> Optional[CleanupWarning]:
        """Delete a transient package. Failures are returned as a warning, never raised."""
        if package is None or not package.is_transient:
            return None

        account = package.account_hint or self.account_hint
        try:
            self.invoker.invoke(
                lambda: self.blob_store.delete(account, package.uri),
                description="package delete",
            )
        except Exception as exc:
            logger.warning("Transient package was not deleted", uri=package.uri, error=str(exc))
            return CleanupWarning(
                f"Failed to delete transient package {package.uri}: {exc}",
                code="package_delete_failed",
                cause=exc,
            )

        logger.info("Transient package deleted", uri=package.uri)
        return None
