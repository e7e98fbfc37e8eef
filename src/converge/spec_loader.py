"""Desired-state document loading.

SECURITY: File size is checked before reading and YAML is parsed with
safe_load only. Input validation is performed at the boundary.

A path is either one YAML file or a directory whose *.yaml / *.yml files
are merged in file-name order. I/O and syntax problems raise SpecLoadError;
content problems (schema and semantic) raise ValidationError with every
violation found across all files.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError as PydanticValidationError

from .config import MAX_SPEC_FILE_SIZE_BYTES
from .models import (
    DOCUMENT_KIND,
    REGIONAL_KINDS,
    DesiredState,
    DesiredStateBody,
    DesiredStateDocument,
    DocumentMetadata,
    ResourceKind,
    resource_id,
)
from .validation import ValidationError, Violation, build_desired_state

logger = logging.getLogger(__name__)

YAML_SUFFIXES = (".yaml", ".yml")


class SpecLoadError(Exception):
    """Raised when a desired-state file cannot be read or parsed."""

    pass


def load_desired_state(path: Path) -> DesiredState:
    """Load, validate and resolve desired state from a file or directory.

    Raises:
        SpecLoadError: If a file cannot be read or is not valid YAML.
        ValidationError: If the content is invalid.
    """
    document = load_document(path)
    desired = build_desired_state(document)
    logger.info(
        "Loaded desired state",
        extra={"path": str(path), "resource_count": len(desired), "warning_count": len(desired.warnings)},
    )
    return desired


def load_document(path: Path) -> DesiredStateDocument:
    """Load one document, merging a directory of documents into one."""
    files = _document_files(path)
    documents: list[DesiredStateDocument] = []
    violations: list[Violation] = []

    for file_path in files:
        raw = _read_yaml(file_path)
        try:
            documents.append(DesiredStateDocument.model_validate(raw))
        except PydanticValidationError as e:
            violations.extend(_schema_violations(file_path, raw, e))

    if violations:
        raise ValidationError(violations)

    return _merge(files, documents)


def _document_files(path: Path) -> list[Path]:
    if path.is_dir():
        files = sorted(p for p in path.iterdir() if p.is_file() and p.suffix in YAML_SUFFIXES)
        if not files:
            raise SpecLoadError(f"No desired-state files (*.yaml, *.yml) in {path}")
        return files
    if not path.exists():
        raise SpecLoadError(f"Desired-state file not found: {path}")
    return [path]


def _read_yaml(path: Path) -> dict[str, Any]:
    # SECURITY: Check file size before reading to prevent DoS
    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise SpecLoadError(f"Failed to stat desired-state file {path}: {e}") from e

    if file_size > MAX_SPEC_FILE_SIZE_BYTES:
        raise SpecLoadError(
            f"Desired-state file exceeds maximum size of {MAX_SPEC_FILE_SIZE_BYTES} bytes: {path}"
        )

    try:
        content = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise SpecLoadError(f"Failed to read desired-state file {path}: {e}") from e

    try:
        raw_data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise SpecLoadError(f"Invalid YAML in {path}: {e}") from e

    if not isinstance(raw_data, dict):
        raise SpecLoadError(f"Desired-state file must contain a YAML mapping: {path}")
    return raw_data


def _schema_violations(path: Path, raw: dict[str, Any], error: PydanticValidationError) -> list[Violation]:
    """Format pydantic errors as violations, naming the resource where possible."""
    violations = []
    for item in error.errors():
        loc = [str(x) for x in item["loc"]]
        rids: tuple[str, ...] = ()
        if len(loc) >= 3 and loc[:2] == ["spec", "resources"] and loc[2].isdigit():
            hint = _resource_hint(raw, int(loc[2]))
            if hint is not None:
                rids = (hint,)
        violations.append(
            Violation(
                message=f"{path.name}: {item['msg']}",
                resource_ids=rids,
                field=".".join(loc) or None,
            )
        )
    return violations


def _resource_hint(raw: dict[str, Any], index: int) -> str | None:
    spec = raw.get("spec")
    if not isinstance(spec, dict) or not isinstance(spec.get("resources"), list):
        return None
    resources = spec["resources"]
    if index >= len(resources) or not isinstance(resources[index], dict):
        return None
    entry = resources[index]
    try:
        kind = ResourceKind(entry.get("kind"))
    except ValueError:
        return None
    name = entry.get("name")
    if not isinstance(name, str):
        return None
    if kind not in REGIONAL_KINDS:
        return resource_id(kind, name, None)
    return resource_id(kind, name, entry.get("region") or spec.get("region"))


def _merge(files: list[Path], documents: list[DesiredStateDocument]) -> DesiredStateDocument:
    if len(documents) == 1:
        return documents[0]

    violations = []
    for attr in ("project", "region"):
        values = {
            file_path.name: value
            for file_path, doc in zip(files, documents, strict=True)
            if (value := getattr(doc.spec, attr)) is not None
        }
        if len(set(values.values())) > 1:
            listing = ", ".join(f"{name}={value}" for name, value in values.items())
            violations.append(Violation(f"documents disagree on spec.{attr}: {listing}", field=f"spec.{attr}"))
    if violations:
        raise ValidationError(violations)

    def first(attr: str) -> str | None:
        return next((getattr(d.spec, attr) for d in documents if getattr(d.spec, attr) is not None), None)

    body = DesiredStateBody.model_construct(
        project=first("project"),
        region=first("region"),
        resources=[resource for doc in documents for resource in doc.spec.resources],
    )
    return DesiredStateDocument.model_construct(
        api_version=documents[0].api_version,
        kind=DOCUMENT_KIND,
        metadata=DocumentMetadata.model_construct(name=documents[0].metadata.name, labels={}),
        spec=body,
    )
