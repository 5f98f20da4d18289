"""
Deployment mutator: drives one change request against a deployment slot.

States: Idle -> Staging -> ConfigBuilding -> Invoking -> CleaningUp -> Done,
with Failed reachable from any of them. Which states a request visits
depends on its kind:

- Upgrade:      Staging, ConfigBuilding (extension inputs only), Invoking, CleaningUp
- ChangeConfig: ConfigBuilding (extension inputs only), Invoking
- ChangeStatus: Invoking

A transient package survives a failed submission so it can be inspected or
reused. It is removed when anything before submission fails, and when the
request is cancelled.
"""

from __future__ import annotations

import asyncio
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional

import structlog

from cloudslot.core.exceptions import (
    CleanupWarning,
    NotFoundError,
    OperationCancelledError,
    RemoteOperationError,
    TransientRemoteError,
)
from cloudslot.deploy.extensions import ExtensionConfigBuilder
from cloudslot.deploy.models import (
    ChangeKind,
    ConfigChangeParameters,
    DeploymentChangeRequest,
    DeploymentSnapshot,
    ExtensionConfiguration,
    MutationOutcome,
    MutationState,
    OperationResult,
    OperationStatus,
    StagedPackage,
    UpgradeParameters,
)
from cloudslot.deploy.protocols import BlobStore, CertificateStore, DeploymentService
from cloudslot.deploy.retry import RetryingInvoker
from cloudslot.deploy.staging import PackageStager


logger = structlog.get_logger()


@dataclass
class _Run:
    """Per-request state; never shared between requests."""

    request: DeploymentChangeRequest
    log: Any
    state: MutationState = MutationState.IDLE
    history: List[MutationState] = field(default_factory=lambda: [MutationState.IDLE])
    staged: Optional[StagedPackage] = None
    warnings: List[CleanupWarning] = field(default_factory=list)
    cancel_event: Optional[threading.Event] = None

    def transition(self, state: MutationState) -> None:
        self.log.debug("Mutation state changed", previous=self.state.value, state=state.value)
        self.state = state
        self.history.append(state)


class DeploymentMutator:
    """Executes Upgrade, ChangeConfig and ChangeStatus requests."""

    def __init__(
        self,
        deployment_service: DeploymentService,
        stager: PackageStager,
        invoker: RetryingInvoker,
        certificate_store: Optional[CertificateStore] = None,
        *,
        snapshot_error_policy: str = "log",
        verbose: bool = False,
    ):
        self.deployment_service = deployment_service
        self.stager = stager
        self.invoker = invoker
        self.certificate_store = certificate_store
        self.snapshot_error_policy = snapshot_error_policy
        self.verbose = verbose

    @classmethod
    def from_settings(
        cls,
        settings,
        deployment_service: DeploymentService,
        blob_store: Optional[BlobStore] = None,
        certificate_store: Optional[CertificateStore] = None,
    ) -> "DeploymentMutator":
        invoker = RetryingInvoker.from_settings(settings)
        stager = PackageStager(blob_store, invoker, account_hint=settings.default_storage_account)
        return cls(
            deployment_service,
            stager,
            invoker,
            certificate_store,
            snapshot_error_policy=settings.snapshot_error_policy,
            verbose=settings.verbose,
        )

    def execute(
        self,
        request: DeploymentChangeRequest,
        cancel_event: Optional[threading.Event] = None,
    ) -> MutationOutcome:
        run = _Run(
            request=request,
            log=logger.bind(serviceName=request.service_name, slot=request.slot.value, kind=request.kind.value),
            cancel_event=cancel_event,
        )
        run.log.info("Deployment change started")

        try:
            self._preflight(run)
            if request.kind is ChangeKind.UPGRADE:
                result = self._run_upgrade(run, cancel_event)
            elif request.kind is ChangeKind.CHANGE_CONFIG:
                result = self._run_change_config(run, cancel_event)
            else:
                result = self._run_change_status(run, cancel_event)
        except Exception as exc:
            if isinstance(exc, RemoteOperationError):
                exc.attach_context(
                    service_name=request.service_name,
                    slot=request.slot.value,
                    operation=request.kind.value,
                )
            failed_in = run.state
            run.transition(MutationState.FAILED)
            run.log.error(
                "Deployment change failed",
                failed_state=failed_in.value,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise

        run.transition(MutationState.DONE)
        run.log.info(
            "Deployment change completed",
            operation_id=result.operation_id,
            status=result.status.value,
            warnings=len(run.warnings),
        )
        return MutationOutcome(
            kind=request.kind,
            service_name=request.service_name,
            slot=request.slot,
            result=result,
            staged_package=run.staged,
            states=list(run.history),
            warnings=list(run.warnings),
        )

    async def execute_async(self, request: DeploymentChangeRequest) -> MutationOutcome:
        """Run ``execute`` in the default executor.

        Cancelling the awaiting task stops the remaining stages; the worker
        still removes a transient package it already staged.
        """
        cancel_event = threading.Event()
        loop = asyncio.get_event_loop()
        future = loop.run_in_executor(None, self.execute, request, cancel_event)
        try:
            return await asyncio.shield(future)
        except asyncio.CancelledError:
            cancel_event.set()
            try:
                await future
            except Exception as exc:
                logger.info("Cancelled deployment change stopped", serviceName=request.service_name, error=str(exc))
            raise

    def _preflight(self, run: _Run) -> None:
        """Checks that need no remote call: fail before any side effect."""
        request = run.request
        if request.kind is ChangeKind.UPGRADE:
            self.stager.check_preconditions(request.package_source)
        if request.kind is not ChangeKind.CHANGE_STATUS and request.extension_inputs:
            self._extension_builder(request).validate(request.extension_inputs)

    def _extension_builder(
        self, request: DeploymentChangeRequest, cancel_event: Optional[threading.Event] = None
    ) -> ExtensionConfigBuilder:
        return ExtensionConfigBuilder(
            request.service_name, self.certificate_store, self.invoker, cancel_event=cancel_event
        )

    @staticmethod
    def _check_cancelled(cancel_event: Optional[threading.Event]) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise OperationCancelledError("Deployment change cancelled", code="cancelled")

    def _run_upgrade(self, run: _Run, cancel_event: Optional[threading.Event]) -> OperationResult:
        request = run.request
        self._check_cancelled(cancel_event)

        run.transition(MutationState.STAGING)
        run.staged = self.stager.stage(request.package_source, run.cancel_event)

        try:
            self._check_cancelled(cancel_event)
            extension_configuration = self._build_extensions(run)
            self._check_cancelled(cancel_event)
        except BaseException:
            self._discard_staged(run)
            raise

        parameters = UpgradeParameters(
            mode=request.upgrade_mode,
            configuration=request.configuration_xml or "",
            extension_configuration=extension_configuration,
            package_uri=run.staged.uri,
            label=request.label,
            role_to_upgrade=request.target_role_name,
            force=request.force,
        )

        run.transition(MutationState.INVOKING)
        try:
            result = self._submit(
                run,
                "upgrade",
                lambda: self.deployment_service.submit_upgrade(request.service_name, request.slot, parameters),
            )
        except OperationCancelledError:
            self._discard_staged(run)
            raise

        run.transition(MutationState.CLEANING_UP)
        warning = self.stager.unstage(run.staged)
        if warning is not None:
            run.warnings.append(warning)
        return result

    def _run_change_config(self, run: _Run, cancel_event: Optional[threading.Event]) -> OperationResult:
        request = run.request
        self._check_cancelled(cancel_event)
        extension_configuration = self._build_extensions(run)
        self._check_cancelled(cancel_event)

        parameters = ConfigChangeParameters(
            configuration=request.configuration_xml or "",
            extension_configuration=extension_configuration,
        )
        run.transition(MutationState.INVOKING)
        return self._submit(
            run,
            "configuration change",
            lambda: self.deployment_service.submit_config_change(request.service_name, request.slot, parameters),
        )

    def _run_change_status(self, run: _Run, cancel_event: Optional[threading.Event]) -> OperationResult:
        request = run.request
        self._check_cancelled(cancel_event)
        run.transition(MutationState.INVOKING)
        return self._submit(
            run,
            "status change",
            lambda: self.deployment_service.submit_status_change(
                request.service_name, request.slot, request.new_status
            ),
        )

    def _build_extensions(self, run: _Run) -> Optional[ExtensionConfiguration]:
        request = run.request
        if not request.extension_inputs:
            return None

        run.transition(MutationState.CONFIG_BUILDING)
        snapshot = self._fetch_snapshot(run)
        return self._extension_builder(request, run.cancel_event).build(
            request.extension_inputs,
            snapshot,
            request.slot,
            warnings=run.warnings,
        )

    def _fetch_snapshot(self, run: _Run) -> DeploymentSnapshot:
        request = run.request
        try:
            snapshot = self.invoker.invoke(
                lambda: self.deployment_service.get_snapshot(request.service_name, request.slot),
                description="snapshot fetch",
                cancel_event=run.cancel_event,
            )
        except NotFoundError as exc:
            if self.verbose:
                run.log.info("No existing deployment; merging against an empty configuration", detail=str(exc))
            return DeploymentSnapshot.missing()
        except (RemoteOperationError, TransientRemoteError) as exc:
            if self.snapshot_error_policy == "raise":
                raise
            if self.snapshot_error_policy == "log":
                run.log.warning(
                    "Snapshot fetch failed; merging against an empty configuration",
                    error=str(exc),
                )
            return DeploymentSnapshot.missing()

        if snapshot is None:
            if self.verbose:
                run.log.info("No existing deployment; merging against an empty configuration")
            return DeploymentSnapshot.missing()
        return snapshot

    def _submit(self, run: _Run, description: str, op: Callable[[], OperationResult]) -> OperationResult:
        result = self.invoker.invoke(op, description=f"{description} submission", cancel_event=run.cancel_event)
        if result.status is OperationStatus.FAILED:
            raise RemoteOperationError(
                f"{description} failed: {result.error or 'operation reported failure'}",
                code="operation_failed",
                operation_id=result.operation_id,
                status_code=result.http_status_code,
                payload=result.error,
            )
        run.log.info(
            "Deployment change submitted",
            operation=description,
            operation_id=result.operation_id,
            status=result.status.value,
        )
        return result

    def _discard_staged(self, run: _Run) -> None:
        """Remove a transient package when the mutation never reached submission."""
        if run.staged is None or not run.staged.is_transient:
            return
        run.log.info("Removing staged package before failing", uri=run.staged.uri)
        warning = self.stager.unstage(run.staged)
        if warning is not None:
            run.warnings.append(warning)
