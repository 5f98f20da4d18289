"""Models for deployment change requests and their results."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from cloudslot.core.exceptions import CleanupWarning, ValidationError


ALL_ROLES = "*"


def _parse_choice(enum_cls, value, what: str):
    """Case-insensitive lookup of an enum member by value."""
    if isinstance(value, enum_cls):
        return value
    if isinstance(value, str):
        wanted = value.strip().lower()
        for member in enum_cls:
            if member.value.lower() == wanted:
                return member
    choices = " | ".join(m.value for m in enum_cls)
    raise ValueError(f"Unrecognized {what} {value!r}; expected {choices}")


class Slot(str, Enum):
    STAGING = "Staging"
    PRODUCTION = "Production"

    @classmethod
    def parse(cls, value) -> "Slot":
        try:
            return _parse_choice(cls, value, "slot")
        except ValueError as exc:
            raise ValidationError(str(exc), code="invalid_slot") from exc


class ChangeKind(str, Enum):
    UPGRADE = "Upgrade"
    CHANGE_CONFIG = "ChangeConfig"
    CHANGE_STATUS = "ChangeStatus"


class UpgradeMode(str, Enum):
    AUTO = "Auto"
    MANUAL = "Manual"
    SIMULTANEOUS = "Simultaneous"

    @classmethod
    def resolve(cls, value) -> "UpgradeMode":
        """Unparseable or missing modes fall back to Auto."""
        try:
            return _parse_choice(cls, value, "upgrade mode")
        except ValueError:
            return cls.AUTO


class NewDeploymentStatus(str, Enum):
    RUNNING = "Running"
    SUSPENDED = "Suspended"


class OperationStatus(str, Enum):
    SUCCEEDED = "Succeeded"
    IN_PROGRESS = "InProgress"
    FAILED = "Failed"


class MutationState(str, Enum):
    IDLE = "Idle"
    STAGING = "Staging"
    CONFIG_BUILDING = "ConfigBuilding"
    INVOKING = "Invoking"
    CLEANING_UP = "CleaningUp"
    DONE = "Done"
    FAILED = "Failed"


class Certificate(BaseModel):
    """Identity material an extension needs installed on the service."""

    model_config = ConfigDict(frozen=True)

    thumbprint: str = Field(..., min_length=1)
    thumbprint_algorithm: str = "sha1"
    data: str = Field(..., min_length=1, repr=False, description="Base64 encoded certificate")
    password: Optional[str] = Field(None, repr=False)
    certificate_format: Literal["pfx", "cer"] = Field("pfx", description="pfx for PKCS#12 bundles, cer for DER")


class ExtensionDescriptor(BaseModel):
    """One requested extension activation."""

    model_config = ConfigDict(frozen=True)

    extension_type: str = Field(..., min_length=1)
    version: str = "*"
    public_config: Optional[str] = None
    private_config: Optional[str] = Field(None, repr=False)
    certificate: Optional[Certificate] = None
    roles: Tuple[str, ...] = ()

    @field_validator("roles", mode="before")
    @classmethod
    def normalize_roles(cls, v):
        if v is None:
            return ()
        if isinstance(v, str):
            v = [v]
        return tuple(r.strip() for r in v if r and r.strip())

    @property
    def role_scopes(self) -> Tuple[str, ...]:
        return self.roles or (ALL_ROLES,)


class ExtensionReference(BaseModel):
    id: str
    extension_type: str
    version: Optional[str] = None
    public_config: Optional[str] = None
    private_config: Optional[str] = Field(None, repr=False)


class ExtensionConfiguration(BaseModel):
    """Role scope -> ordered extension references. Insertion order is significant."""

    roles: Dict[str, List[ExtensionReference]] = Field(default_factory=dict)

    @property
    def scopes(self) -> List[str]:
        return list(self.roles)

    def find_scope(self, scope: str) -> Optional[str]:
        """Return the existing key matching ``scope`` case-insensitively."""
        wanted = scope.lower()
        for key in self.roles:
            if key.lower() == wanted:
                return key
        return None

    def extension_ids(self) -> List[str]:
        return [ref.id for refs in self.roles.values() for ref in refs]

    def is_empty(self) -> bool:
        return not any(self.roles.values())


class DeploymentSnapshot(BaseModel):
    """Point-in-time read of the target slot."""

    exists: bool = True
    extension_configuration: ExtensionConfiguration = Field(default_factory=ExtensionConfiguration)

    @classmethod
    def missing(cls) -> "DeploymentSnapshot":
        return cls(exists=False)


class StagedPackage(BaseModel):
    model_config = ConfigDict(frozen=True)

    uri: str
    is_transient: bool = False
    account_hint: Optional[str] = None
    local_path: Optional[str] = None

    @field_validator("uri")
    @classmethod
    def check_uri(cls, v: str) -> str:
        if not v.lower().startswith(("http://", "https://")):
            raise ValueError("Staged package URI must be http or https")
        return v


class UpgradeParameters(BaseModel):
    model_config = ConfigDict(frozen=True)

    mode: UpgradeMode = UpgradeMode.AUTO
    configuration: str = ""
    extension_configuration: Optional[ExtensionConfiguration] = None
    package_uri: str
    label: str
    role_to_upgrade: Optional[str] = None
    force: bool = False


class ConfigChangeParameters(BaseModel):
    model_config = ConfigDict(frozen=True)

    configuration: str = ""
    extension_configuration: Optional[ExtensionConfiguration] = None


class OperationResult(BaseModel):
    operation_id: Optional[str] = None
    status: OperationStatus = OperationStatus.SUCCEEDED
    http_status_code: Optional[int] = None
    error: Optional[str] = None


class DeploymentChangeRequest(BaseModel):
    """Validated, immutable description of one change to a deployment slot.

    Use the ``upgrade``, ``change_config`` and ``change_status`` factories;
    they resolve the change kind once and raise ``ValidationError`` for
    malformed input.
    """

    model_config = ConfigDict(frozen=True)

    service_name: str
    slot: Slot
    kind: ChangeKind
    package_source: Optional[str] = None
    configuration_xml: Optional[str] = None
    upgrade_mode: UpgradeMode = UpgradeMode.AUTO
    target_role_name: Optional[str] = None
    force: bool = False
    label: Optional[str] = None
    new_status: Optional[NewDeploymentStatus] = None
    extension_inputs: Tuple[ExtensionDescriptor, ...] = ()

    @model_validator(mode="before")
    @classmethod
    def default_label(cls, data: Any) -> Any:
        if isinstance(data, dict) and not data.get("label"):
            data = dict(data)
            service_name = data.get("service_name")
            data["label"] = service_name.strip() if isinstance(service_name, str) else service_name
        return data

    @field_validator("service_name")
    @classmethod
    def check_service_name(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("service_name must not be empty")
        return v

    @field_validator("slot", mode="before")
    @classmethod
    def parse_slot(cls, v):
        return _parse_choice(Slot, v, "slot")

    @field_validator("upgrade_mode", mode="before")
    @classmethod
    def parse_upgrade_mode(cls, v):
        return UpgradeMode.resolve(v)

    @field_validator("new_status", mode="before")
    @classmethod
    def parse_new_status(cls, v):
        if v is None:
            return None
        return _parse_choice(NewDeploymentStatus, v, "deployment status")

    @field_validator("target_role_name")
    @classmethod
    def blank_role_name(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not v.strip():
            return None
        return v

    @field_validator("extension_inputs", mode="before")
    @classmethod
    def normalize_extension_inputs(cls, v):
        if v is None:
            return ()
        return tuple(v)

    @model_validator(mode="after")
    def check_kind_fields(self) -> "DeploymentChangeRequest":
        if self.kind is ChangeKind.CHANGE_STATUS and self.new_status is None:
            raise ValueError("ChangeStatus requires new_status")
        return self

    @classmethod
    def _create(cls, **fields) -> "DeploymentChangeRequest":
        try:
            return cls(**fields)
        except PydanticValidationError as exc:
            messages = "; ".join(err["msg"] for err in exc.errors())
            raise ValidationError(f"Invalid deployment change request: {messages}", code="invalid_request") from exc

    @classmethod
    def upgrade(
        cls,
        service_name: str,
        slot,
        package_source: Optional[str],
        *,
        configuration_xml: Optional[str] = None,
        upgrade_mode=None,
        target_role_name: Optional[str] = None,
        force: bool = False,
        label: Optional[str] = None,
        extension_inputs=(),
    ) -> "DeploymentChangeRequest":
        return cls._create(
            kind=ChangeKind.UPGRADE,
            service_name=service_name,
            slot=slot,
            package_source=package_source,
            configuration_xml=configuration_xml,
            upgrade_mode=upgrade_mode,
            target_role_name=target_role_name,
            force=force,
            label=label,
            extension_inputs=extension_inputs,
        )

    @classmethod
    def change_config(
        cls,
        service_name: str,
        slot,
        *,
        configuration_xml: Optional[str] = None,
        extension_inputs=(),
    ) -> "DeploymentChangeRequest":
        return cls._create(
            kind=ChangeKind.CHANGE_CONFIG,
            service_name=service_name,
            slot=slot,
            configuration_xml=configuration_xml,
            extension_inputs=extension_inputs,
        )

    @classmethod
    def change_status(cls, service_name: str, slot, new_status) -> "DeploymentChangeRequest":
        return cls._create(
            kind=ChangeKind.CHANGE_STATUS,
            service_name=service_name,
            slot=slot,
            new_status=new_status,
        )


@dataclass
class MutationOutcome:
    """Result of a completed deployment change."""

    kind: ChangeKind
    service_name: str
    slot: Slot
    result: OperationResult
    staged_package: Optional[StagedPackage] = None
    states: List[MutationState] = field(default_factory=list)
    warnings: List[CleanupWarning] = field(default_factory=list)

    @property
    def operation_id(self) -> Optional[str]:
        return self.result.operation_id

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "serviceName": self.service_name,
            "slot": self.slot.value,
            "operationId": self.result.operation_id,
            "status": self.result.status.value,
            "packageUri": self.staged_package.uri if self.staged_package else None,
            "states": [s.value for s in self.states],
            "warnings": [str(w) for w in self.warnings],
        }
