"""Tests for DeploymentChangeRequest construction."""

import pytest
from pydantic import ValidationError as PydanticValidationError

from cloudslot.core.exceptions import ValidationError
from cloudslot.deploy.models import (
    ChangeKind,
    DeploymentChangeRequest,
    ExtensionDescriptor,
    NewDeploymentStatus,
    Slot,
    StagedPackage,
    UpgradeMode,
)


@pytest.mark.parametrize("value", ["staging", "STAGING", "Staging", " staging "])
def test_slot_is_case_insensitive(value):
    req = DeploymentChangeRequest.change_status("svc", value, "running")
    assert req.slot is Slot.STAGING


@pytest.mark.parametrize("value", ["", "prod", "canary", None])
def test_unknown_slot_is_validation_error(value):
    with pytest.raises(ValidationError):
        DeploymentChangeRequest.change_status("svc", value, "Running")


def test_slot_parse_helper():
    assert Slot.parse("production") is Slot.PRODUCTION
    with pytest.raises(ValidationError):
        Slot.parse("blue")


@pytest.mark.parametrize("value", [None, "", "Rolling", "auto-ish", 42])
def test_unrecognized_upgrade_mode_resolves_to_auto(value):
    assert UpgradeMode.resolve(value) is UpgradeMode.AUTO
    req = DeploymentChangeRequest.upgrade("svc", "Production", "https://x/app.cspkg", upgrade_mode=value)
    assert req.upgrade_mode is UpgradeMode.AUTO


@pytest.mark.parametrize("value,expected", [("manual", UpgradeMode.MANUAL), ("Simultaneous", UpgradeMode.SIMULTANEOUS)])
def test_known_upgrade_modes(value, expected):
    req = DeploymentChangeRequest.upgrade("svc", "Production", "https://x/app.cspkg", upgrade_mode=value)
    assert req.upgrade_mode is expected


def test_label_defaults_to_service_name():
    req = DeploymentChangeRequest.upgrade("mysvc", "Staging", "https://x/app.cspkg")
    assert req.label == "mysvc"
    labelled = DeploymentChangeRequest.upgrade("mysvc", "Staging", "https://x/app.cspkg", label="v2")
    assert labelled.label == "v2"


def test_kind_is_resolved_by_factory():
    assert DeploymentChangeRequest.upgrade("s", "Staging", "p").kind is ChangeKind.UPGRADE
    assert DeploymentChangeRequest.change_config("s", "Staging").kind is ChangeKind.CHANGE_CONFIG
    assert DeploymentChangeRequest.change_status("s", "Staging", "Suspended").kind is ChangeKind.CHANGE_STATUS


def test_new_status_parsing():
    req = DeploymentChangeRequest.change_status("svc", "Production", "suspended")
    assert req.new_status is NewDeploymentStatus.SUSPENDED
    with pytest.raises(ValidationError):
        DeploymentChangeRequest.change_status("svc", "Production", "Paused")
    with pytest.raises(ValidationError):
        DeploymentChangeRequest.change_status("svc", "Production", None)


def test_empty_service_name_rejected():
    with pytest.raises(ValidationError):
        DeploymentChangeRequest.change_status("  ", "Production", "Running")


def test_blank_role_name_means_all_roles():
    req = DeploymentChangeRequest.upgrade("svc", "Staging", "p", target_role_name="  ")
    assert req.target_role_name is None


def test_request_is_immutable():
    req = DeploymentChangeRequest.change_status("svc", "Production", "Running")
    with pytest.raises(PydanticValidationError):
        req.service_name = "other"


def test_extension_inputs_keep_order():
    inputs = [ExtensionDescriptor(extension_type="A.B"), ExtensionDescriptor(extension_type="C.D", roles="Web")]
    req = DeploymentChangeRequest.change_config("svc", "Staging", extension_inputs=inputs)
    assert [d.extension_type for d in req.extension_inputs] == ["A.B", "C.D"]
    assert req.extension_inputs[1].role_scopes == ("Web",)
    assert req.extension_inputs[0].role_scopes == ("*",)


def test_staged_package_requires_http_uri():
    with pytest.raises(PydanticValidationError):
        StagedPackage(uri="/tmp/app.cspkg", is_transient=True)


def test_upgrade_without_package_constructs():
    # rejected later by the stager preconditions as a ConfigurationError
    req = DeploymentChangeRequest.upgrade("svc", "Staging", None)
    assert req.package_source is None
