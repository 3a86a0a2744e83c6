"""JSON Schema validation for inbound documents.

Schemas live next to the runtime under `schemas/` and are expressed as YAML but
are valid JSON Schema Draft 2020-12 documents.

This module is intentionally strict:
- Unknown kinds are rejected.
- Validation errors are surfaced with stable JSON Pointer-like paths, sorted,
  and raised as `MalformedRequest` so admission rejects them with no state change.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable

import yaml
from jsonschema import Draft202012Validator, FormatChecker

from errors import ConfigError, MalformedRequest, SchemaViolation

DEFAULT_SCHEMAS_DIR = Path(__file__).resolve().parent.parent / "schemas"

_KIND_TO_SCHEMA_FILENAME: dict[str, str] = {
    "JobRequest": "job_request.schema.yaml",
    "OracleEventRegistration": "oracle_event.schema.yaml",
    "Attestation": "attestation.schema.yaml",
}


def _load_yaml_object(path: Path) -> dict[str, Any]:
    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Failed to parse YAML: {path}: {e}") from e
    if not isinstance(raw, dict):
        raise ConfigError(f"Expected YAML object at root: {path}")
    return raw


def _escape_json_pointer_token(token: str) -> str:
    # RFC 6901 escaping.
    return token.replace("~", "~0").replace("/", "~1")


def _json_pointer(path: Iterable[Any]) -> str:
    parts: list[str] = []
    for p in path:
        if isinstance(p, int):
            parts.append(str(p))
        else:
            parts.append(_escape_json_pointer_token(str(p)))
    return "/" + "/".join(parts) if parts else "/"


@dataclass(frozen=True)
class SchemaBundle:
    kind: str
    schema: dict[str, Any]
    source_path: Path


class SchemaValidator:
    """Loads the request schemas and validates documents by kind."""

    def __init__(self, bundles: dict[str, SchemaBundle]):
        self._bundles = dict(bundles)
        self._validators: dict[str, Draft202012Validator] = {}

    @classmethod
    def load_from_dir(cls, schemas_dir: Path = DEFAULT_SCHEMAS_DIR) -> "SchemaValidator":
        schemas_dir = schemas_dir.resolve()
        if not schemas_dir.exists():
            raise ConfigError(f"Schemas directory not found: {schemas_dir}")

        bundles: dict[str, SchemaBundle] = {}
        for kind, filename in _KIND_TO_SCHEMA_FILENAME.items():
            path = (schemas_dir / filename).resolve()
            if not path.exists():
                raise ConfigError(f"Missing required schema file for {kind}: {path}")
            bundles[kind] = SchemaBundle(kind=kind, schema=_load_yaml_object(path), source_path=path)

        return cls(bundles)

    def validate(self, kind: str, document: Any) -> None:
        """Validate a document against the schema for its kind."""
        validator = self._get_or_build_validator(kind)

        violations = [
            SchemaViolation(path=_json_pointer(err.absolute_path), message=err.message) for err in validator.iter_errors(document)
        ]
        if violations:
            # Stable order: helps tests and makes errors easier to scan.
            violations.sort(key=lambda v: (v.path, v.message))
            raise MalformedRequest(f"{kind} failed schema validation ({len(violations)} violation(s))", violations)

    def _get_or_build_validator(self, kind: str) -> Draft202012Validator:
        if kind in self._validators:
            return self._validators[kind]
        if kind not in self._bundles:
            raise ConfigError(f"Unknown schema kind: {kind}")

        bundle = self._bundles[kind]
        try:
            Draft202012Validator.check_schema(bundle.schema)
        except Exception as e:
            raise ConfigError(f"Invalid schema for {kind} at {bundle.source_path}: {e}") from e

        validator = Draft202012Validator(bundle.schema, format_checker=FormatChecker())
        self._validators[kind] = validator
        return validator
