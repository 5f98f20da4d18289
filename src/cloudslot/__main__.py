"""CLI entrypoint: cloudslot upgrade | config | status."""

from __future__ import annotations

import argparse
import json
import sys
from typing import List, Optional

import structlog
from pydantic import ValidationError as PydanticValidationError

from cloudslot.clients.management import ManagementClient
from cloudslot.core.config import Settings
from cloudslot.core.exceptions import CloudSlotError, ConfigurationError, ValidationError
from cloudslot.deploy.configuration import FileConfigurationReader, load_extension_inputs
from cloudslot.deploy.models import DeploymentChangeRequest
from cloudslot.deploy.mutator import DeploymentMutator
from cloudslot.storage.s3 import S3BlobStore
from cloudslot.utils.logging import bind_request_context, setup_logging


logger = structlog.get_logger()

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_INVALID = 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="cloudslot", description="Update a cloud service deployment slot")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log diagnostics for expected conditions")
    sub = parser.add_subparsers(dest="cmd", required=True)

    def _common(p):
        p.add_argument("--service", required=True, help="Service name")
        p.add_argument("--slot", required=True, help="Deployment slot. Staging | Production")

    cmd_upgrade = sub.add_parser("upgrade", help="Upgrade the deployment package")
    _common(cmd_upgrade)
    cmd_upgrade.add_argument("--package", required=True, help="Local .cspkg path or http(s) URI")
    cmd_upgrade.add_argument("--configuration", required=True, help="Service configuration (.cscfg) file")
    cmd_upgrade.add_argument("--mode", help="Upgrade mode. Auto | Manual | Simultaneous")
    cmd_upgrade.add_argument("--label", help="Deployment label (default: service name)")
    cmd_upgrade.add_argument("--role", help="Upgrade only this role")
    cmd_upgrade.add_argument("--force", action="store_true", help="Force the upgrade")
    cmd_upgrade.add_argument("--extensions", help="YAML file with extension configurations")

    cmd_config = sub.add_parser("config", help="Change the deployment configuration")
    _common(cmd_config)
    cmd_config.add_argument("--configuration", required=True, help="Service configuration (.cscfg) file")
    cmd_config.add_argument("--extensions", help="YAML file with extension configurations")

    cmd_status = sub.add_parser("status", help="Change the deployment run-state")
    _common(cmd_status)
    cmd_status.add_argument("--new-status", required=True, help="Running | Suspended")

    return parser


def build_request(args: argparse.Namespace, reader: Optional[FileConfigurationReader] = None) -> DeploymentChangeRequest:
    reader = reader or FileConfigurationReader()

    if args.cmd == "status":
        return DeploymentChangeRequest.change_status(args.service, args.slot, args.new_status)

    configuration_xml = reader.read(args.configuration) if args.configuration else None
    extension_inputs = load_extension_inputs(args.extensions) if args.extensions else ()

    if args.cmd == "upgrade":
        return DeploymentChangeRequest.upgrade(
            args.service,
            args.slot,
            args.package,
            configuration_xml=configuration_xml,
            upgrade_mode=args.mode,
            target_role_name=args.role,
            force=args.force,
            label=args.label,
            extension_inputs=extension_inputs,
        )
    return DeploymentChangeRequest.change_config(
        args.service,
        args.slot,
        configuration_xml=configuration_xml,
        extension_inputs=extension_inputs,
    )


def _print_error(exc: CloudSlotError) -> None:
    print(json.dumps({"error": type(exc).__name__, "code": exc.code, "message": str(exc)}, indent=2), file=sys.stderr)


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        settings = Settings()
    except PydanticValidationError as exc:
        _print_error(ConfigurationError(f"Invalid settings: {exc}", code="invalid_settings"))
        return EXIT_INVALID
    if args.verbose:
        settings.verbose = True
    setup_logging(settings.log_level, settings.log_format)

    try:
        request = build_request(args)
        bind_request_context(request.service_name, request.slot.value, request.kind.value)
        with ManagementClient.from_settings(settings) as client:
            mutator = DeploymentMutator.from_settings(
                settings,
                deployment_service=client,
                blob_store=S3BlobStore.from_settings(settings),
                certificate_store=client,
            )
            outcome = mutator.execute(request)
    except (ValidationError, ConfigurationError) as exc:
        logger.error("Deployment change rejected", error=str(exc), code=exc.code)
        _print_error(exc)
        return EXIT_INVALID
    except CloudSlotError as exc:
        _print_error(exc)
        return EXIT_FAILED

    print(json.dumps(outcome.to_dict(), indent=2))
    return EXIT_OK


def run() -> None:
    sys.exit(main())


if __name__ == "__main__":
    run()
