"""Manifest file parsing.

This module reads CredentialIssuer manifests from YAML files for offline
validation.
"""

from typing import Any

import yaml

from impersonation_controller.exceptions import SpecValidationError

CREDENTIAL_ISSUER_KIND = "CredentialIssuer"


def parse_manifest_file(manifest_path: str) -> dict[str, Any]:
    """Parse a single-document YAML manifest.

    Args:
        manifest_path: Path to the manifest file.

    Returns:
        The parsed document.

    Raises:
        SpecValidationError: If the file does not exist, is empty, contains
            multiple documents, contains malformed YAML, or is not a mapping.

    """
    try:
        with open(manifest_path) as stream:
            docs = [doc for doc in yaml.safe_load_all(stream) if doc is not None]
    except FileNotFoundError as err:
        raise SpecValidationError(f"Manifest file '{manifest_path}' does not exist") from err
    except yaml.YAMLError as err:
        raise SpecValidationError(f"Manifest file '{manifest_path}' contains malformed YAML: {err}") from err

    if len(docs) > 1:
        raise SpecValidationError(
            f"File '{manifest_path}' contains multiple YAML documents. Only single document files are supported."
        )
    if not docs:
        raise SpecValidationError(f"Manifest file '{manifest_path}' is empty")
    result = docs[0]
    if not isinstance(result, dict):
        raise SpecValidationError(
            f"File '{manifest_path}' does not contain a valid YAML mapping. Expected a Kubernetes resource document."
        )
    return result


def parse_credential_issuer_file(manifest_path: str) -> dict[str, Any]:
    """Parse a manifest and check that it is a CredentialIssuer.

    Raises:
        SpecValidationError: If the file cannot be parsed or has another kind.

    """
    manifest = parse_manifest_file(manifest_path)
    kind = manifest.get("kind")
    if kind != CREDENTIAL_ISSUER_KIND:
        raise SpecValidationError(f"File '{manifest_path}' holds a {kind!r}, expected a {CREDENTIAL_ISSUER_KIND!r}")
    return manifest
