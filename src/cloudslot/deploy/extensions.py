"""Extension configuration: validation, certificate upload and merge."""

from __future__ import annotations

import threading
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

import structlog

from cloudslot.core.exceptions import CleanupWarning, ConfigurationError, ValidationError
from cloudslot.deploy.models import (
    ALL_ROLES,
    DeploymentSnapshot,
    ExtensionConfiguration,
    ExtensionDescriptor,
    ExtensionReference,
    OperationStatus,
    Slot,
)
from cloudslot.deploy.protocols import CertificateStore
from cloudslot.deploy.retry import RetryingInvoker


logger = structlog.get_logger()

EXTENSION_ID_TEMPLATE = "{scope}-{name}-{slot}-Ext-{index}"
DEFAULT_SCOPE_NAME = "Default"


def _scope_label(scope: str) -> str:
    return "all roles" if scope == ALL_ROLES else f"role {scope}"


class ExtensionConfigBuilder:
    """Builds the extension configuration submitted with a deployment change."""

    def __init__(
        self,
        service_name: str,
        certificate_store: Optional[CertificateStore],
        invoker: RetryingInvoker,
        *,
        cancel_event: Optional[threading.Event] = None,
    ):
        self.service_name = service_name
        self.certificate_store = certificate_store
        self.invoker = invoker
        self.cancel_event = cancel_event

    def validate(self, inputs: Sequence[ExtensionDescriptor]) -> None:
        """Reject inputs that apply the same extension type twice to a role scope."""
        seen: Dict[Tuple[str, str], ExtensionDescriptor] = {}
        for descriptor in inputs:
            for scope in descriptor.role_scopes:
                key = (descriptor.extension_type.lower(), scope.lower())
                if key in seen:
                    raise ValidationError(
                        f"Cannot apply more than one extension of type {descriptor.extension_type} "
                        f"to {_scope_label(scope)}",
                        code="duplicate_extension_type",
                    )
                seen[key] = descriptor

        if self.certificate_store is None and any(d.certificate for d in inputs):
            raise ConfigurationError(
                "Extension inputs carry certificates but no certificate store is configured",
                code="certificate_store_not_set",
            )

    def upload_certificates(
        self,
        inputs: Iterable[ExtensionDescriptor],
        warnings: List[CleanupWarning],
    ) -> None:
        uploaded: Set[str] = set()
        for descriptor in inputs:
            certificate = descriptor.certificate
            if certificate is None or certificate.thumbprint.lower() in uploaded:
                continue

            logger.info(
                "Uploading extension certificate",
                thumbprint=certificate.thumbprint,
                extension_type=descriptor.extension_type,
            )
            result = self.invoker.invoke(
                lambda certificate=certificate: self.certificate_store.upload_certificate(
                    self.service_name, certificate
                ),
                description="certificate upload",
                cancel_event=self.cancel_event,
            )
            uploaded.add(certificate.thumbprint.lower())

            if result is not None and result.status is OperationStatus.FAILED:
                warning = CleanupWarning(
                    f"Certificate {certificate.thumbprint} upload for {descriptor.extension_type} "
                    f"did not complete: {result.error or 'operation failed'}",
                    code="certificate_upload_failed",
                )
                logger.warning(
                    "Certificate upload failed",
                    thumbprint=certificate.thumbprint,
                    operation_id=result.operation_id,
                    error=result.error,
                )
                warnings.append(warning)

    @staticmethod
    def _next_id(scope: str, descriptor: ExtensionDescriptor, slot: Slot, used: Set[str]) -> str:
        scope_name = DEFAULT_SCOPE_NAME if scope == ALL_ROLES else scope
        name = descriptor.extension_type.rsplit(".", 1)[-1]
        index = 0
        while True:
            candidate = EXTENSION_ID_TEMPLATE.format(scope=scope_name, name=name, slot=slot.value, index=index)
            if candidate not in used:
                return candidate
            index += 1

    def merge(
        self,
        inputs: Sequence[ExtensionDescriptor],
        baseline: ExtensionConfiguration,
        slot: Slot,
    ) -> ExtensionConfiguration:
        merged = baseline.model_copy(deep=True)
        used = set(merged.extension_ids())

        for descriptor in inputs:
            for scope in descriptor.role_scopes:
                key = merged.find_scope(scope) or scope
                references = merged.roles.setdefault(key, [])
                reference = ExtensionReference(
                    id=self._next_id(key, descriptor, slot, used),
                    extension_type=descriptor.extension_type,
                    version=descriptor.version,
                    public_config=descriptor.public_config,
                    private_config=descriptor.private_config,
                )
                used.add(reference.id)

                wanted = descriptor.extension_type.lower()
                for position, existing in enumerate(references):
                    if existing.extension_type.lower() == wanted:
                        references[position] = reference
                        break
                else:
                    references.append(reference)

        return merged

    def build(
        self,
        inputs: Sequence[ExtensionDescriptor],
        snapshot: DeploymentSnapshot,
        slot,
        warnings: Optional[List[CleanupWarning]] = None,
    ) -> ExtensionConfiguration:
        """Validate ``inputs``, upload their certificates and merge them over the snapshot."""
        inputs = tuple(inputs)
        slot = Slot.parse(slot)
        self.validate(inputs)

        if warnings is None:
            warnings = []
        self.upload_certificates(inputs, warnings)

        baseline = snapshot.extension_configuration if snapshot.exists else ExtensionConfiguration()
        merged = self.merge(inputs, baseline, slot)
        logger.info(
            "Extension configuration built",
            inputs=len(inputs),
            scopes=merged.scopes,
            baseline_exists=snapshot.exists,
        )
        return merged
