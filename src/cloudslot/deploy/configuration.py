"""Reading service configuration and extension definitions from disk."""

from __future__ import annotations

import base64
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import structlog
import yaml
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.serialization import pkcs12
from pydantic import ValidationError as PydanticValidationError

from cloudslot.core.exceptions import ConfigurationError, ValidationError
from cloudslot.deploy.models import Certificate, ExtensionDescriptor


logger = structlog.get_logger()


class FileConfigurationReader:
    """Reads a service configuration (.cscfg) file as text."""

    def __init__(self, encoding: str = "utf-8-sig"):
        self.encoding = encoding

    def read(self, path: Union[str, Path]) -> str:
        config_path = Path(path).expanduser()
        if not config_path.is_file():
            raise ConfigurationError(f"Configuration file not found: {config_path}", code="configuration_not_found")
        try:
            text = config_path.read_text(encoding=self.encoding)
        except UnicodeDecodeError as exc:
            raise ConfigurationError(
                f"Configuration file {config_path} is not valid {self.encoding} text: {exc}",
                code="configuration_unreadable",
            ) from exc
        logger.debug("Read service configuration", path=str(config_path), length=len(text))
        return text


def _read_text_field(entry: Dict[str, Any], key: str, base_dir: Path) -> Any:
    """Inline value for ``key``, or the contents of the file named by ``<key>_path``."""
    file_key = f"{key}_path"
    if entry.get(file_key):
        file_path = base_dir / entry.pop(file_key)
        try:
            return file_path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            raise ConfigurationError(
                f"Cannot read {key} file {file_path}: {exc}", code="extension_file_unreadable"
            ) from exc
    return entry.get(key)


def _read_certificate(data: bytes, password: Optional[str] = None) -> Tuple[x509.Certificate, str, bytes]:
    """Parse PFX, PEM or DER bytes.

    Returns the certificate, its upload format and the bytes to upload:
    PFX bundles go up as-is, PEM is converted to DER and sent as ``cer``.
    """
    try:
        _, cert, _ = pkcs12.load_key_and_certificates(data, password.encode() if password else None)
    except ValueError:
        cert = None
    if cert is not None:
        return cert, "pfx", data
    try:
        cert = x509.load_pem_x509_certificate(data)
        return cert, "cer", cert.public_bytes(serialization.Encoding.DER)
    except ValueError:
        pass
    try:
        return x509.load_der_x509_certificate(data), "cer", data
    except ValueError as exc:
        raise ConfigurationError("Unreadable certificate: expected PFX, PEM or DER", code="invalid_certificate") from exc


def certificate_thumbprint(data: bytes, password: Optional[str] = None) -> str:
    """SHA1 thumbprint of a PFX, PEM or DER certificate, upper-case hex."""
    cert, _, _ = _read_certificate(data, password)
    return cert.fingerprint(hashes.SHA1()).hex().upper()


def _load_certificate(raw: Dict[str, Any], base_dir: Path) -> Dict[str, Any]:
    cert = dict(raw)
    if "format" in cert:
        cert["certificate_format"] = cert.pop("format")
    cert_path = cert.pop("path", None)
    if cert_path:
        full_path = base_dir / cert_path
        if not full_path.is_file():
            raise ConfigurationError(f"Certificate file not found: {full_path}", code="certificate_not_found")
        parsed, certificate_format, payload = _read_certificate(full_path.read_bytes(), cert.get("password"))
        cert["data"] = base64.b64encode(payload).decode("ascii")
        cert["certificate_format"] = certificate_format
        if not cert.get("thumbprint"):
            cert["thumbprint"] = parsed.fingerprint(hashes.SHA1()).hex().upper()
    return cert


def load_extension_inputs(path: Union[str, Path]) -> List[ExtensionDescriptor]:
    """Load extension descriptors from a YAML file.

    The file holds either a list of entries or a mapping with an
    ``extensions`` list. Each entry::

        type: Microsoft.Windows.Azure.Extensions.RDP
        version: "1.*"
        roles: [WebRole1]            # omit for all roles
        public_config: "<PublicConfig>...</PublicConfig>"
        private_config_path: rdp-private.xml
        certificate:
          thumbprint: 0A1B...
          path: rdp.pfx
          password: ...

    Relative paths resolve against the YAML file's directory.
    """
    yaml_path = Path(path).expanduser()
    if not yaml_path.is_file():
        raise ConfigurationError(f"Extension file not found: {yaml_path}", code="extensions_not_found")

    try:
        with open(yaml_path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or []
    except (yaml.YAMLError, UnicodeDecodeError) as exc:
        raise ValidationError(f"{yaml_path}: not a valid YAML document: {exc}", code="invalid_extensions") from exc
    if isinstance(data, dict):
        data = data.get("extensions") or []
    if not isinstance(data, list):
        raise ValidationError(f"{yaml_path}: expected a list of extensions", code="invalid_extensions")

    base_dir = yaml_path.parent
    descriptors: List[ExtensionDescriptor] = []
    for index, raw in enumerate(data):
        if not isinstance(raw, dict):
            raise ValidationError(f"{yaml_path}: extension #{index} must be a mapping", code="invalid_extensions")
        entry = dict(raw)
        fields: Dict[str, Any] = {
            "extension_type": entry.get("type") or entry.get("extension_type"),
            "version": str(entry.get("version", "*")),
            "public_config": _read_text_field(entry, "public_config", base_dir),
            "private_config": _read_text_field(entry, "private_config", base_dir),
            "roles": entry.get("roles"),
        }
        try:
            if entry.get("certificate"):
                fields["certificate"] = Certificate(**_load_certificate(entry["certificate"], base_dir))
            descriptors.append(ExtensionDescriptor(**fields))
        except (PydanticValidationError, TypeError) as exc:
            raise ValidationError(f"{yaml_path}: extension #{index} is invalid: {exc}", code="invalid_extensions") from exc

    logger.info("Loaded extension inputs", path=str(yaml_path), count=len(descriptors))
    return descriptors
