"""Durable store of last-applied resource state.

Layout under the state directory:

    records/<quoted resource id>.json   last successfully applied state
    errors/<quoted resource id>.json    last failure, if any

Every write goes to a temporary file in the target directory, is fsynced and
then renamed over the destination, so a crash mid-run leaves either the old
record or the new one, never a torn file. Failures are written to errors/
and never touch records/, which keeps the previous good state intact.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from dataclasses import asdict, dataclass, field, replace
from datetime import UTC, datetime
from pathlib import Path
from typing import Any
from urllib.parse import quote

from .models import REFERENCE_FIELDS, Resource, ResourceKind

logger = logging.getLogger(__name__)

STATE_SCHEMA_VERSION = 1

RECORDS_DIR = "records"
ERRORS_DIR = "errors"


class StateStoreError(Exception):
    """Raised when the state store cannot be read or written."""

    pass


@dataclass(frozen=True)
class ReconciliationRecord:
    """Last applied state of one resource.

    Attributes:
        resource_id: Engine id (kind/region/name).
        provider_id: Id returned by the provider on create.
        desired_hash: Hash of the desired resource that was applied.
        attributes: Attributes as applied, used for update deltas and drift.
        references: Reference field -> referenced resource ids at apply time.
        last_applied_at: ISO-8601 UTC timestamp of the last successful apply.
        last_error: Last recorded failure; only set on records returned by load().
    """

    resource_id: str
    kind: ResourceKind
    name: str
    region: str | None
    provider_id: str
    desired_hash: str
    attributes: dict[str, Any] = field(default_factory=dict)
    references: dict[str, list[str]] = field(default_factory=dict)
    last_applied_at: str = ""
    last_error: str | None = None
    schema_version: int = STATE_SCHEMA_VERSION

    @classmethod
    def from_resource(cls, resource: Resource, provider_id: str) -> ReconciliationRecord:
        references: dict[str, list[str]] = {}
        for ref in resource.references:
            references.setdefault(ref.field, []).append(ref.target_id)
        return cls(
            resource_id=resource.id,
            kind=resource.kind,
            name=resource.name,
            region=resource.region,
            provider_id=provider_id,
            desired_hash=resource.desired_hash,
            attributes=dict(resource.attributes),
            references=references,
            last_applied_at=datetime.now(UTC).isoformat(),
        )

    @property
    def depends_on(self) -> list[str]:
        return sorted({rid for ids in self.references.values() for rid in ids})

    def explicit_references(self) -> dict[str, list[str]]:
        """References made through reference fields, without ordering-only edges."""
        fields = REFERENCE_FIELDS[self.kind]
        return {name: ids for name, ids in self.references.items() if name in fields}

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["kind"] = self.kind.value
        data.pop("last_error")
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ReconciliationRecord:
        version = data.get("schema_version", STATE_SCHEMA_VERSION)
        if version > STATE_SCHEMA_VERSION:
            raise StateStoreError(
                f"record {data.get('resource_id')} has schema version {version}, "
                f"this build understands up to {STATE_SCHEMA_VERSION}"
            )
        try:
            return cls(
                resource_id=data["resource_id"],
                kind=ResourceKind(data["kind"]),
                name=data["name"],
                region=data.get("region"),
                provider_id=data["provider_id"],
                desired_hash=data["desired_hash"],
                attributes=dict(data.get("attributes") or {}),
                references={k: list(v) for k, v in (data.get("references") or {}).items()},
                last_applied_at=data.get("last_applied_at", ""),
                schema_version=version,
            )
        except (KeyError, ValueError, TypeError) as e:
            raise StateStoreError(f"malformed record: {e}") from e


@dataclass(frozen=True)
class FailureRecord:
    """Last failure of a resource, kept beside its record for inspection."""

    resource_id: str
    action: str
    status: str
    error: str
    recorded_at: str


class FileStateStore:
    """State store backed by one JSON file per resource."""

    def __init__(self, state_dir: Path | str) -> None:
        self.state_dir = Path(state_dir)
        self._records_dir = self.state_dir / RECORDS_DIR
        self._errors_dir = self.state_dir / ERRORS_DIR

    # ------------------------------------------------------------------
    # Records
    # ------------------------------------------------------------------

    def load(self) -> dict[str, ReconciliationRecord]:
        """Load every record, with its last failure attached.

        Raises:
            StateStoreError: If the directory is unreadable or a record is corrupt.
        """
        records: dict[str, ReconciliationRecord] = {}
        failures = {f.resource_id: f for f in self.failures()}
        for path in self._list(self._records_dir):
            record = ReconciliationRecord.from_dict(self._read(path))
            failure = failures.get(record.resource_id)
            if failure is not None:
                record = replace(record, last_error=failure.error)
            records[record.resource_id] = record

        logger.debug("State loaded", extra={"record_count": len(records), "state_dir": str(self.state_dir)})
        return records

    def get(self, resource_id: str) -> ReconciliationRecord | None:
        path = self._path(self._records_dir, resource_id)
        if not path.exists():
            return None
        return ReconciliationRecord.from_dict(self._read(path))

    def save(self, record: ReconciliationRecord) -> None:
        """Atomically write a record and clear any failure recorded for it."""
        self._write(self._path(self._records_dir, record.resource_id), record.to_dict())
        self._remove(self._path(self._errors_dir, record.resource_id))

    def delete(self, resource_id: str) -> None:
        """Remove a record and its failure. Missing records are ignored."""
        self._remove(self._path(self._records_dir, resource_id))
        self._remove(self._path(self._errors_dir, resource_id))

    # ------------------------------------------------------------------
    # Failures
    # ------------------------------------------------------------------

    def record_failure(self, resource_id: str, action: str, status: str, error: str) -> None:
        failure = FailureRecord(
            resource_id=resource_id,
            action=action,
            status=status,
            error=error,
            recorded_at=datetime.now(UTC).isoformat(),
        )
        self._write(self._path(self._errors_dir, resource_id), asdict(failure))

    def failures(self) -> list[FailureRecord]:
        result = []
        for path in self._list(self._errors_dir):
            data = self._read(path)
            try:
                result.append(FailureRecord(**data))
            except TypeError as e:
                raise StateStoreError(f"malformed failure record {path.name}: {e}") from e
        return result

    # ------------------------------------------------------------------
    # File helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _path(directory: Path, resource_id: str) -> Path:
        return directory / f"{quote(resource_id, safe='')}.json"

    def _list(self, directory: Path) -> list[Path]:
        if not directory.exists():
            return []
        try:
            # Leftover temp files from an interrupted write start with "."
            return sorted(p for p in directory.glob("*.json") if not p.name.startswith("."))
        except OSError as e:
            raise StateStoreError(f"cannot list {directory}: {e}") from e

    def _read(self, path: Path) -> dict[str, Any]:
        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise StateStoreError(f"corrupt state file {path}: {e}") from e
        except OSError as e:
            raise StateStoreError(f"cannot read state file {path}: {e}") from e
        if not isinstance(data, dict):
            raise StateStoreError(f"corrupt state file {path}: expected an object")
        return data

    def _write(self, path: Path, data: dict[str, Any]) -> None:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with tempfile.NamedTemporaryFile(
                mode="w",
                encoding="utf-8",
                dir=path.parent,
                delete=False,
                prefix=f".{path.name}.tmp",
            ) as temp_file:
                temp_path = Path(temp_file.name)
                json.dump(data, temp_file, indent=2, sort_keys=True)
                temp_file.flush()
                os.fsync(temp_file.fileno())
            try:
                temp_path.replace(path)
            except OSError:
                temp_path.unlink(missing_ok=True)
                raise
        except OSError as e:
            raise StateStoreError(f"cannot write state file {path}: {e}") from e

    def _remove(self, path: Path) -> None:
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            raise StateStoreError(f"cannot remove state file {path}: {e}") from e
