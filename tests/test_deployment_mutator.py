"""Tests for DeploymentMutator: the state machine and its side effects."""

import asyncio
import json
import threading

import httpx
import pytest

from cloudslot.clients.management import ManagementClient
from cloudslot.core.config import Settings
from cloudslot.core.exceptions import (
    ConfigurationError,
    OperationCancelledError,
    RemoteOperationError,
    TransientRemoteError,
    ValidationError,
)
from cloudslot.deploy.models import (
    ALL_ROLES,
    Certificate,
    ChangeKind,
    ConfigChangeParameters,
    DeploymentChangeRequest,
    DeploymentSnapshot,
    ExtensionConfiguration,
    ExtensionDescriptor,
    ExtensionReference,
    MutationState,
    NewDeploymentStatus,
    OperationResult,
    OperationStatus,
    Slot,
    UpgradeMode,
    UpgradeParameters,
)
from cloudslot.deploy.mutator import DeploymentMutator
from cloudslot.deploy.retry import RetryingInvoker
from cloudslot.deploy.staging import PackageStager


RDP = "Microsoft.Windows.Azure.Extensions.RDP"
DIAG = "Microsoft.Windows.Azure.Extensions.Diagnostics"

S = MutationState


@pytest.fixture
def mutator(service, stager, invoker, certificate_store) -> DeploymentMutator:
    return DeploymentMutator(service, stager, invoker, certificate_store, verbose=True)


class TestChangeStatus:
    def test_single_status_call(self, mutator, service, blob_store, certificate_store):
        req = DeploymentChangeRequest.change_status("mysvc", "production", "Running")

        outcome = mutator.execute(req)

        assert service.calls == [("submit_status_change", "mysvc", Slot.PRODUCTION, NewDeploymentStatus.RUNNING)]
        assert blob_store.uploads == [] and blob_store.deletes == []
        assert certificate_store.uploads == []
        assert outcome.kind is ChangeKind.CHANGE_STATUS
        assert outcome.operation_id == "op-1"
        assert outcome.states == [S.IDLE, S.INVOKING, S.DONE]
        assert outcome.staged_package is None


class TestUpgrade:
    def test_local_package_upload_submit_delete(self, mutator, service, blob_store):
        req = DeploymentChangeRequest.upgrade(
            "mysvc",
            "Staging",
            "/local/app.cspkg",
            configuration_xml="<ServiceConfiguration/>",
            upgrade_mode="manual",
            target_role_name="WebRole",
            force=True,
        )

        outcome = mutator.execute(req)

        assert blob_store.uploads == [("pkgstore", "/local/app.cspkg")]
        uploaded_uri = "https://pkgstore.blob.example.com/packages/1/app.cspkg"
        assert service.names() == ["submit_upgrade"]
        params = service.calls[0][3]
        assert isinstance(params, UpgradeParameters)
        assert params.package_uri == uploaded_uri
        assert params.mode is UpgradeMode.MANUAL
        assert params.configuration == "<ServiceConfiguration/>"
        assert params.label == "mysvc"
        assert params.role_to_upgrade == "WebRole"
        assert params.force is True
        assert params.extension_configuration is None
        assert blob_store.deletes == [("pkgstore", uploaded_uri)]
        assert outcome.states == [S.IDLE, S.STAGING, S.INVOKING, S.CLEANING_UP, S.DONE]
        assert outcome.staged_package.is_transient
        assert outcome.warnings == []

    def test_remote_package_is_not_deleted(self, mutator, service, blob_store):
        req = DeploymentChangeRequest.upgrade("mysvc", "Production", "https://cdn.example.com/app.cspkg")

        mutator.execute(req)

        assert blob_store.uploads == []
        assert blob_store.deletes == []
        assert service.calls[0][3].package_uri == "https://cdn.example.com/app.cspkg"

    def test_submit_failure_keeps_package(self, mutator, service, blob_store):
        service.submit_error = RemoteOperationError("deployment is locked", status_code=409, operation_id="op-9")
        req = DeploymentChangeRequest.upgrade("mysvc", "Staging", "/local/app.cspkg")

        with pytest.raises(RemoteOperationError) as exc_info:
            mutator.execute(req)

        assert len(blob_store.uploads) == 1
        assert blob_store.deletes == []
        err = exc_info.value
        assert err.service_name == "mysvc"
        assert err.slot == "Staging"
        assert err.operation == "Upgrade"
        assert err.operation_id == "op-9"
        assert err.attempts == 1
        assert "mysvc" in str(err) and "attempts=1" in str(err)

    def test_submit_retry_exhaustion_keeps_package(self, mutator, service, blob_store, sleeps):
        service.submit_error = TransientRemoteError("503 Service Unavailable", status_code=503)
        req = DeploymentChangeRequest.upgrade("mysvc", "Staging", "/local/app.cspkg")

        with pytest.raises(RemoteOperationError) as exc_info:
            mutator.execute(req)

        assert service.names() == ["submit_upgrade"] * 3
        assert blob_store.deletes == []
        assert exc_info.value.attempts == 3
        assert exc_info.value.service_name == "mysvc"

    def test_failed_operation_result_is_an_error(self, mutator, service, blob_store):
        service.result = OperationResult(operation_id="op-7", status=OperationStatus.FAILED, error="package corrupt")
        req = DeploymentChangeRequest.upgrade("mysvc", "Staging", "/local/app.cspkg")

        with pytest.raises(RemoteOperationError) as exc_info:
            mutator.execute(req)

        assert exc_info.value.operation_id == "op-7"
        assert "package corrupt" in str(exc_info.value)
        assert blob_store.deletes == []

    def test_delete_failure_is_a_warning(self, mutator, blob_store):
        blob_store.delete_error = RemoteOperationError("forbidden", status_code=403)
        req = DeploymentChangeRequest.upgrade("mysvc", "Staging", "/local/app.cspkg")

        outcome = mutator.execute(req)

        assert outcome.states[-1] is S.DONE
        assert len(outcome.warnings) == 1
        assert outcome.warnings[0].code == "package_delete_failed"

    @pytest.mark.parametrize("source", ["", "   ", None])
    def test_empty_package_source_fails_in_preflight(self, mutator, service, blob_store, source):
        req = DeploymentChangeRequest.upgrade("mysvc", "Staging", source)

        with pytest.raises(ConfigurationError) as exc_info:
            mutator.execute(req)

        assert exc_info.value.code == "package_source_empty"
        assert service.calls == []
        assert blob_store.uploads == []

    def test_missing_storage_account_fails_before_remote_calls(self, service, blob_store, invoker):
        mutator = DeploymentMutator(service, PackageStager(blob_store, invoker, account_hint=None), invoker)
        req = DeploymentChangeRequest.upgrade(
            "mysvc", "Staging", "/local/app.cspkg",
            extension_inputs=[ExtensionDescriptor(extension_type=RDP)],
        )

        with pytest.raises(ConfigurationError):
            mutator.execute(req)

        assert service.calls == []
        assert blob_store.uploads == []

    def test_duplicate_extensions_fail_before_upload(self, mutator, service, blob_store, certificate_store):
        req = DeploymentChangeRequest.upgrade(
            "mysvc",
            "Staging",
            "/local/app.cspkg",
            extension_inputs=[
                ExtensionDescriptor(extension_type=RDP, certificate=Certificate(thumbprint="AA", data="eA==")),
                ExtensionDescriptor(extension_type=RDP),
            ],
        )

        with pytest.raises(ValidationError):
            mutator.execute(req)

        assert service.calls == []
        assert blob_store.uploads == []
        assert certificate_store.uploads == []

    def test_extension_failure_before_submit_removes_package(self, mutator, service, blob_store, certificate_store):
        certificate_store.error = RemoteOperationError("certificate rejected", status_code=400)
        req = DeploymentChangeRequest.upgrade(
            "mysvc",
            "Staging",
            "/local/app.cspkg",
            extension_inputs=[
                ExtensionDescriptor(extension_type=RDP, certificate=Certificate(thumbprint="AA", data="eA==")),
            ],
        )

        with pytest.raises(RemoteOperationError):
            mutator.execute(req)

        assert "submit_upgrade" not in service.names()
        assert len(blob_store.deletes) == 1

    def test_upgrade_with_extensions_merges_snapshot(self, mutator, service):
        service.snapshot = DeploymentSnapshot(
            extension_configuration=ExtensionConfiguration(
                roles={"WebRole": [ExtensionReference(id="WebRole-Diagnostics-Staging-Ext-0", extension_type=DIAG)]}
            )
        )
        req = DeploymentChangeRequest.upgrade(
            "mysvc", "Staging", "https://cdn.example.com/app.cspkg",
            extension_inputs=[ExtensionDescriptor(extension_type=RDP)],
        )

        outcome = mutator.execute(req)

        assert service.names() == ["get_snapshot", "submit_upgrade"]
        config = service.calls[1][3].extension_configuration
        assert list(config.roles) == ["WebRole", ALL_ROLES]
        assert outcome.states == [S.IDLE, S.STAGING, S.CONFIG_BUILDING, S.INVOKING, S.CLEANING_UP, S.DONE]


class TestChangeConfig:
    def test_config_without_extensions(self, mutator, service, blob_store):
        req = DeploymentChangeRequest.change_config("mysvc", "Production", configuration_xml="<cfg/>")

        outcome = mutator.execute(req)

        assert service.names() == ["submit_config_change"]
        params = service.calls[0][3]
        assert isinstance(params, ConfigChangeParameters)
        assert params.configuration == "<cfg/>"
        assert params.extension_configuration is None
        assert blob_store.uploads == []
        assert outcome.states == [S.IDLE, S.INVOKING, S.DONE]

    def test_not_found_snapshot_uses_empty_baseline(self, mutator, service):
        # service.snapshot is None: the fake raises NotFoundError
        req = DeploymentChangeRequest.change_config(
            "mysvc", "Production",
            configuration_xml="<cfg/>",
            extension_inputs=[ExtensionDescriptor(extension_type=RDP)],
        )

        outcome = mutator.execute(req)

        assert service.names() == ["get_snapshot", "submit_config_change"]
        config = service.calls[1][3].extension_configuration
        assert list(config.roles) == [ALL_ROLES]
        assert config.roles[ALL_ROLES][0].id == "Default-RDP-Production-Ext-0"
        assert outcome.states == [S.IDLE, S.CONFIG_BUILDING, S.INVOKING, S.DONE]

    def test_snapshot_error_is_lenient_by_default(self, mutator, service, sleeps):
        service.snapshot_error = RemoteOperationError("internal", status_code=400)
        req = DeploymentChangeRequest.change_config(
            "mysvc", "Production", extension_inputs=[ExtensionDescriptor(extension_type=RDP)]
        )

        mutator.execute(req)

        assert service.names() == ["get_snapshot", "submit_config_change"]

    def test_snapshot_error_policy_raise(self, service, stager, invoker):
        mutator = DeploymentMutator(service, stager, invoker, snapshot_error_policy="raise")
        service.snapshot_error = RemoteOperationError("internal", status_code=400)
        req = DeploymentChangeRequest.change_config(
            "mysvc", "Production", extension_inputs=[ExtensionDescriptor(extension_type=RDP)]
        )

        with pytest.raises(RemoteOperationError) as exc_info:
            mutator.execute(req)

        assert service.names() == ["get_snapshot"]
        assert exc_info.value.operation == "ChangeConfig"

    @pytest.mark.parametrize("body", [b"<html>gateway</html>", b'{"extensionConfiguration": {"allRoles": [{"type": "X"}]}}'])
    def test_malformed_snapshot_response_follows_policy(self, stager, invoker, body):
        submitted = []

        def handler(request: httpx.Request) -> httpx.Response:
            if request.method == "GET":
                return httpx.Response(200, content=body)
            submitted.append(json.loads(request.content))
            return httpx.Response(202, headers={"x-ms-request-id": "op-5"})

        req = DeploymentChangeRequest.change_config(
            "mysvc", "Production", extension_inputs=[ExtensionDescriptor(extension_type=RDP)]
        )
        with ManagementClient("https://mgmt.example.com", transport=httpx.MockTransport(handler)) as client:
            outcome = DeploymentMutator(client, stager, invoker).execute(req)

            with pytest.raises(RemoteOperationError) as exc_info:
                DeploymentMutator(client, stager, invoker, snapshot_error_policy="raise").execute(req)

        assert outcome.operation_id == "op-5"
        assert len(submitted) == 1
        assert [ext["id"] for ext in submitted[0]["extensionConfiguration"]["allRoles"]] == [
            "Default-RDP-Production-Ext-0"
        ]
        assert exc_info.value.code == "invalid_response"
        assert exc_info.value.operation == "ChangeConfig"

    def test_none_snapshot_is_not_found(self, mutator, service):
        service.get_snapshot = lambda name, slot: None
        req = DeploymentChangeRequest.change_config(
            "mysvc", "Production", extension_inputs=[ExtensionDescriptor(extension_type=RDP)]
        )
        mutator.execute(req)
        assert service.calls[0][3].extension_configuration.scopes == [ALL_ROLES]


class TestCancellation:
    def test_cancel_before_start(self, mutator, service):
        event = threading.Event()
        event.set()
        req = DeploymentChangeRequest.change_status("mysvc", "Production", "Suspended")

        with pytest.raises(OperationCancelledError):
            mutator.execute(req, cancel_event=event)

        assert service.calls == []

    def test_cancel_after_staging_still_cleans_up(self, mutator, service, blob_store):
        event = threading.Event()
        blob_store.on_upload = event.set
        req = DeploymentChangeRequest.upgrade("mysvc", "Staging", "/local/app.cspkg")

        with pytest.raises(OperationCancelledError):
            mutator.execute(req, cancel_event=event)

        assert service.calls == []
        assert len(blob_store.uploads) == 1
        assert len(blob_store.deletes) == 1

    def test_cancel_during_submit_retries_removes_package(self, service, blob_store):
        event = threading.Event()
        invoker = RetryingInvoker(max_attempts=5, sleep=lambda _: event.set())
        mutator = DeploymentMutator(service, PackageStager(blob_store, invoker, account_hint="pkgstore"), invoker)
        service.submit_error = TransientRemoteError("503 Service Unavailable", status_code=503)
        req = DeploymentChangeRequest.upgrade("mysvc", "Staging", "/local/app.cspkg")

        with pytest.raises(OperationCancelledError):
            mutator.execute(req, cancel_event=event)

        assert service.names() == ["submit_upgrade"]
        assert len(blob_store.deletes) == 1


class TestAsync:
    @pytest.mark.asyncio
    async def test_execute_async(self, mutator, service):
        req = DeploymentChangeRequest.change_status("mysvc", "Staging", "Running")
        outcome = await mutator.execute_async(req)
        assert outcome.operation_id == "op-1"
        assert service.names() == ["submit_status_change"]

    @pytest.mark.asyncio
    async def test_cancelling_task_mid_upload_removes_package(self, mutator, service, blob_store):
        uploading = threading.Event()
        release = threading.Event()

        def block_upload():
            uploading.set()
            release.wait(5)

        blob_store.on_upload = block_upload
        req = DeploymentChangeRequest.upgrade("mysvc", "Staging", "/local/app.cspkg")
        task = asyncio.ensure_future(mutator.execute_async(req))
        loop = asyncio.get_running_loop()
        assert await loop.run_in_executor(None, uploading.wait, 5)

        task.cancel()
        # let the task observe the cancellation before the worker resumes
        await asyncio.sleep(0.05)
        release.set()

        with pytest.raises(asyncio.CancelledError):
            await task

        assert len(blob_store.uploads) == 1
        assert len(blob_store.deletes) == 1
        assert service.calls == []


def test_from_settings(service, blob_store, certificate_store):
    settings = Settings(
        _env_file=None,
        default_storage_account="pkgstore",
        retry_max_attempts=5,
        snapshot_error_policy="RAISE",
    )
    mutator = DeploymentMutator.from_settings(settings, service, blob_store, certificate_store)
    assert mutator.invoker.max_attempts == 5
    assert mutator.stager.account_hint == "pkgstore"
    assert mutator.snapshot_error_policy == "raise"


def test_concurrent_requests_share_no_state(mutator, service):
    outcomes = []

    def run(slot):
        outcomes.append(mutator.execute(DeploymentChangeRequest.change_status("svc", slot, "Running")))

    threads = [threading.Thread(target=run, args=(slot,)) for slot in ("Staging", "Production")]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sorted(o.slot.value for o in outcomes) == ["Production", "Staging"]
    for o in outcomes:
        assert o.states == [S.IDLE, S.INVOKING, S.DONE]
