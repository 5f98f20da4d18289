"""HTTP client for the deployment management API."""

from __future__ import annotations

from typing import Any, Dict, List, Optional
from urllib.parse import quote

import httpx
import structlog

from cloudslot.core.exceptions import (
    ConfigurationError,
    NotFoundError,
    RemoteOperationError,
    TransientRemoteError,
)
from cloudslot.deploy.models import (
    ALL_ROLES,
    Certificate,
    ConfigChangeParameters,
    DeploymentSnapshot,
    ExtensionConfiguration,
    ExtensionReference,
    NewDeploymentStatus,
    OperationResult,
    OperationStatus,
    Slot,
    UpgradeParameters,
)
from cloudslot.deploy.retry import TRANSIENT_STATUS_CODES


logger = structlog.get_logger()

REQUEST_ID_HEADER = "x-ms-request-id"


def extension_configuration_to_wire(config: Optional[ExtensionConfiguration]) -> Optional[Dict[str, Any]]:
    if config is None:
        return None

    def _ref(ref: ExtensionReference) -> Dict[str, Any]:
        item = {"id": ref.id, "type": ref.extension_type}
        if ref.version:
            item["version"] = ref.version
        if ref.public_config is not None:
            item["publicConfiguration"] = ref.public_config
        if ref.private_config is not None:
            item["privateConfiguration"] = ref.private_config
        return item

    named = [
        {"roleName": scope, "extensions": [_ref(r) for r in refs]}
        for scope, refs in config.roles.items()
        if scope != ALL_ROLES
    ]
    return {
        "allRoles": [_ref(r) for r in config.roles.get(ALL_ROLES, [])],
        "namedRoles": named,
    }


def extension_configuration_from_wire(data: Optional[Dict[str, Any]]) -> ExtensionConfiguration:
    """Parse the wire shape; raises ValueError when it is malformed."""
    config = ExtensionConfiguration()
    if not data:
        return config
    if not isinstance(data, dict):
        raise ValueError("extensionConfiguration must be an object")

    def _refs(items: Any, where: str) -> List[ExtensionReference]:
        if items is None:
            return []
        if not isinstance(items, list):
            raise ValueError(f"{where} must be a list")
        refs = []
        for item in items:
            if not isinstance(item, dict) or not item.get("id"):
                raise ValueError(f"{where} entry has no id")
            refs.append(
                ExtensionReference(id=item["id"], extension_type=item.get("type") or "", version=item.get("version"))
            )
        return refs

    if data.get("allRoles"):
        config.roles[ALL_ROLES] = _refs(data["allRoles"], "allRoles")
    named_roles = data.get("namedRoles") or []
    if not isinstance(named_roles, list):
        raise ValueError("namedRoles must be a list")
    for role in named_roles:
        if not isinstance(role, dict) or not role.get("roleName"):
            raise ValueError("namedRoles entry has no roleName")
        config.roles[role["roleName"]] = _refs(role.get("extensions"), f"role {role['roleName']}")
    return config


class ManagementClient:
    """Implements DeploymentService and CertificateStore over HTTP."""

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        *,
        timeout: float = 60.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._client = httpx.Client(
            base_url=str(base_url).rstrip("/"),
            headers=headers,
            timeout=httpx.Timeout(timeout),
            transport=transport,
        )

    @classmethod
    def from_settings(cls, settings) -> "ManagementClient":
        if not settings.management_url:
            raise ConfigurationError("MANAGEMENT_URL is not set", code="management_url_not_set")
        return cls(
            str(settings.management_url),
            settings.management_token,
            timeout=settings.request_timeout_seconds,
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "ManagementClient":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    @staticmethod
    def _slot_path(service_name: str, slot: Slot) -> str:
        return f"/services/hostedservices/{quote(service_name, safe='')}/deploymentslots/{slot.value.lower()}"

    @staticmethod
    def _error_payload(response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError:
            return response.text or None

    def _raise_for_status(self, response: httpx.Response, operation: str) -> None:
        if response.is_success:
            return

        status = response.status_code
        payload = self._error_payload(response)
        error = payload.get("error", payload) if isinstance(payload, dict) else {}
        code = error.get("code") if isinstance(error, dict) else None
        message = (error.get("message") if isinstance(error, dict) else None) or payload or response.reason_phrase

        if status == 404:
            raise NotFoundError(f"{operation}: {message}", code=code or "not_found")
        if status in TRANSIENT_STATUS_CODES or status >= 500:
            raise TransientRemoteError(f"{operation} returned HTTP {status}: {message}", code=code, status_code=status)
        raise RemoteOperationError(
            f"{operation} rejected: {message}",
            code=code,
            operation_id=response.headers.get(REQUEST_ID_HEADER),
            status_code=status,
            payload=payload,
        )

    def _request(self, method: str, path: str, operation: str, **kwargs) -> httpx.Response:
        try:
            response = self._client.request(method, path, **kwargs)
        except httpx.TimeoutException as exc:
            raise TransientRemoteError(f"{operation} timed out: {exc}") from exc
        except httpx.TransportError as exc:
            raise TransientRemoteError(f"{operation} transport error: {exc}") from exc
        logger.debug("Management API response", operation=operation, status=response.status_code)
        self._raise_for_status(response, operation)
        return response

    @staticmethod
    def _operation_result(response: httpx.Response) -> OperationResult:
        status = OperationStatus.IN_PROGRESS if response.status_code == 202 else OperationStatus.SUCCEEDED
        return OperationResult(
            operation_id=response.headers.get(REQUEST_ID_HEADER),
            status=status,
            http_status_code=response.status_code,
        )

    def get_snapshot(self, service_name: str, slot: Slot) -> DeploymentSnapshot:
        response = self._request("GET", self._slot_path(service_name, slot), "get deployment")
        try:
            data = response.json() if response.content else {}
            if not isinstance(data, dict):
                raise ValueError(f"expected a JSON object, got {type(data).__name__}")
            extension_configuration = extension_configuration_from_wire(data.get("extensionConfiguration"))
        except ValueError as exc:
            # JSONDecodeError and pydantic's ValidationError are both ValueErrors
            raise RemoteOperationError(
                f"get deployment returned an invalid response: {exc}",
                code="invalid_response",
                operation_id=response.headers.get(REQUEST_ID_HEADER),
                status_code=response.status_code,
                payload=response.text,
            ) from exc
        return DeploymentSnapshot(exists=True, extension_configuration=extension_configuration)

    def submit_upgrade(self, service_name: str, slot: Slot, parameters: UpgradeParameters) -> OperationResult:
        body = {
            "mode": parameters.mode.value,
            "packageUrl": parameters.package_uri,
            "configuration": parameters.configuration,
            "label": parameters.label,
            "force": parameters.force,
            "extensionConfiguration": extension_configuration_to_wire(parameters.extension_configuration),
        }
        if parameters.role_to_upgrade:
            body["roleToUpgrade"] = parameters.role_to_upgrade
        response = self._request(
            "POST", self._slot_path(service_name, slot), "upgrade deployment", params={"comp": "upgrade"}, json=body
        )
        return self._operation_result(response)

    def submit_config_change(
        self, service_name: str, slot: Slot, parameters: ConfigChangeParameters
    ) -> OperationResult:
        body = {
            "configuration": parameters.configuration,
            "extensionConfiguration": extension_configuration_to_wire(parameters.extension_configuration),
        }
        response = self._request(
            "POST", self._slot_path(service_name, slot), "change configuration", params={"comp": "config"}, json=body
        )
        return self._operation_result(response)

    def submit_status_change(
        self, service_name: str, slot: Slot, status: NewDeploymentStatus
    ) -> OperationResult:
        response = self._request(
            "POST",
            self._slot_path(service_name, slot),
            "update deployment status",
            params={"comp": "status"},
            json={"status": status.value},
        )
        return self._operation_result(response)

    def upload_certificate(self, service_name: str, certificate: Certificate) -> OperationResult:
        body = {
            "data": certificate.data,
            "certificateFormat": certificate.certificate_format,
            "password": certificate.password or "",
            "thumbprint": certificate.thumbprint,
            "thumbprintAlgorithm": certificate.thumbprint_algorithm,
        }
        response = self._request(
            "POST",
            f"/services/hostedservices/{quote(service_name, safe='')}/certificates",
            "upload certificate",
            json=body,
        )
        return self._operation_result(response)
