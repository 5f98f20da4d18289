"""
Pytest configuration and fixtures for cloudslot tests.
"""

from typing import List, Optional, Tuple

import pytest

from cloudslot.core.exceptions import NotFoundError
from cloudslot.deploy.models import (
    DeploymentSnapshot,
    OperationResult,
)
from cloudslot.deploy.retry import RetryingInvoker
from cloudslot.deploy.staging import PackageStager


class FakeDeploymentService:
    """Records every call; snapshot and submission results are configurable."""

    def __init__(self, snapshot: Optional[DeploymentSnapshot] = None, snapshot_error: Optional[Exception] = None):
        self.snapshot = snapshot
        self.snapshot_error = snapshot_error
        self.submit_error: Optional[Exception] = None
        self.result = OperationResult(operation_id="op-1")
        self.calls: List[Tuple] = []

    def get_snapshot(self, service_name, slot):
        self.calls.append(("get_snapshot", service_name, slot))
        if self.snapshot_error is not None:
            raise self.snapshot_error
        if self.snapshot is None:
            raise NotFoundError("deployment not found")
        return self.snapshot

    def _submit(self, *call):
        self.calls.append(call)
        if self.submit_error is not None:
            raise self.submit_error
        return self.result

    def submit_upgrade(self, service_name, slot, parameters):
        return self._submit("submit_upgrade", service_name, slot, parameters)

    def submit_config_change(self, service_name, slot, parameters):
        return self._submit("submit_config_change", service_name, slot, parameters)

    def submit_status_change(self, service_name, slot, status):
        return self._submit("submit_status_change", service_name, slot, status)

    def names(self) -> List[str]:
        return [c[0] for c in self.calls]


class FakeBlobStore:
    def __init__(self):
        self.uploads: List[Tuple] = []
        self.deletes: List[Tuple] = []
        self.delete_error: Optional[Exception] = None
        self.on_upload = None

    def upload(self, account_hint, local_path):
        self.uploads.append((account_hint, str(local_path)))
        if self.on_upload is not None:
            self.on_upload()
        return f"https://{account_hint}.blob.example.com/packages/{len(self.uploads)}/app.cspkg"

    def delete(self, account_hint, uri):
        self.deletes.append((account_hint, uri))
        if self.delete_error is not None:
            raise self.delete_error


class FakeCertificateStore:
    def __init__(self, result: Optional[OperationResult] = None, error: Optional[Exception] = None):
        self.result = result
        self.error = error
        self.uploads: List[Tuple] = []

    def upload_certificate(self, service_name, certificate):
        self.uploads.append((service_name, certificate.thumbprint))
        if self.error is not None:
            raise self.error
        return self.result


@pytest.fixture
def sleeps() -> List[float]:
    return []


@pytest.fixture
def invoker(sleeps) -> RetryingInvoker:
    return RetryingInvoker(max_attempts=3, backoff_base=0.1, max_backoff=1.0, sleep=sleeps.append)


@pytest.fixture
def blob_store() -> FakeBlobStore:
    return FakeBlobStore()


@pytest.fixture
def certificate_store() -> FakeCertificateStore:
    return FakeCertificateStore()


@pytest.fixture
def service() -> FakeDeploymentService:
    return FakeDeploymentService()


@pytest.fixture
def stager(blob_store, invoker) -> PackageStager:
    return PackageStager(blob_store, invoker, account_hint="pkgstore")
