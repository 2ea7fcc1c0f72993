"""YAML plan document persistence for pipeline sessions.

The plan document is the only persisted state. It is meant to be readable and
editable by the operator between stages, so it is laid out as blocks rather
than as a raw model dump: ``metadata`` (refs, timestamps, stage, version and
backup), ``analysis`` (classification counts and per-file records),
``partitions`` (the ordered stack with validation/push/fix annotations) and the
optional ``audit``, ``remote_failures`` and ``history`` blocks.
"""

from __future__ import annotations

import logging
import os
from collections import Counter
from pathlib import Path
from typing import Any, Dict, Mapping

import yaml
from pydantic import ValidationError

from ..errors import ConfigError
from .schema import FileTag, PlanMetadata, Session, StackPlan, utc_now

LOGGER = logging.getLogger(__name__)


def session_to_document(session: Session) -> Dict[str, Any]:
    """Lay out ``session`` as a plan document mapping."""
    plan = session.plan
    counts = Counter(entry.tag.value for entry in plan.files)
    metadata: Dict[str, Any] = {
        "source": plan.metadata.source,
        "base": plan.metadata.base,
        "source_commit": plan.metadata.source_commit,
        "created_at": plan.metadata.created_at.isoformat(),
        "updated_at": session.updated_at.isoformat(),
        "session_created_at": session.created_at.isoformat(),
        "stage": session.stage.value,
        "version": session.version,
        "backup": session.backup.model_dump(mode="json") if session.backup else None,
    }
    document: Dict[str, Any] = {
        "metadata": metadata,
        "analysis": {
            "total_files": len(plan.files),
            "classifications": {tag.value: counts.get(tag.value, 0) for tag in FileTag},
            "files": [entry.model_dump(mode="json") for entry in plan.files],
        },
        "partitions": [
            partition.model_dump(mode="json", exclude_none=True) for partition in plan.partitions
        ],
    }
    if session.audit is not None:
        document["audit"] = session.audit.model_dump(mode="json")
    if session.remote_failures:
        document["remote_failures"] = [item.model_dump(mode="json") for item in session.remote_failures]
    document["history"] = [record.model_dump(mode="json") for record in session.history]
    return document


def session_from_document(document: Mapping[str, Any]) -> Session:
    """Rebuild a :class:`Session` from a plan document mapping."""
    if not isinstance(document, Mapping):
        raise ConfigError("Plan document must be a mapping at the top level.")
    metadata = document.get("metadata")
    if not isinstance(metadata, Mapping):
        raise ConfigError("Plan document is missing its metadata block.")
    analysis = document.get("analysis") or {}
    if not isinstance(analysis, Mapping):
        raise ConfigError("Plan document analysis block must be a mapping.")

    try:
        plan = StackPlan(
            metadata=PlanMetadata(
                source=metadata.get("source"),
                base=metadata.get("base"),
                source_commit=metadata.get("source_commit"),
                created_at=metadata.get("created_at") or utc_now(),
            ),
            files=analysis.get("files") or (),
            partitions=document.get("partitions") or (),
        )
        payload: Dict[str, Any] = {
            "version": metadata.get("version", 1),
            "stage": metadata.get("stage", "analyze"),
            "plan": plan,
            "backup": metadata.get("backup"),
            "audit": document.get("audit"),
            "remote_failures": document.get("remote_failures") or (),
            "history": document.get("history") or (),
        }
        if metadata.get("session_created_at"):
            payload["created_at"] = metadata["session_created_at"]
        if metadata.get("updated_at"):
            payload["updated_at"] = metadata["updated_at"]
        return Session.model_validate(payload)
    except ValidationError as error:
        raise ConfigError(f"Malformed plan document: {error}") from error


class PlanStore:
    """Read-modify-write access to the plan document at stage boundaries."""

    def __init__(self, path: Path | str, *, archive_dir: Path | str | None = None) -> None:
        self.path = Path(path)
        self.archive_dir = Path(archive_dir) if archive_dir else self.path.parent / "archive"

    @classmethod
    def from_config(cls, config: Mapping[str, Any], repo_root: Path) -> "PlanStore":
        stack_cfg = config.get("stack") or {}
        paths_cfg = config.get("paths") or {}
        plan_value = Path(str(stack_cfg.get("plan_path") or ".stacksplit/plan.yaml"))
        if not plan_value.is_absolute():
            plan_value = repo_root / plan_value
        archive_value = paths_cfg.get("archive")
        archive_path = None
        if isinstance(archive_value, str) and archive_value.strip():
            archive_path = Path(archive_value.strip())
            if not archive_path.is_absolute():
                archive_path = repo_root / archive_path
        return cls(plan_value, archive_dir=archive_path)

    def exists(self) -> bool:
        return self.path.exists()

    def load(self) -> Session:
        """Load the current session; a missing or malformed document is a ``ConfigError``."""
        if not self.path.exists():
            raise ConfigError(
                f"No plan document at {self.path}.",
                action="Run `stacksplit analyze` to start a session.",
            )
        try:
            with self.path.open("r", encoding="utf-8") as handle:
                document = yaml.safe_load(handle) or {}
        except yaml.YAMLError as error:
            raise ConfigError(f"Failed to parse plan document {self.path}: {error}") from error
        return session_from_document(document)

    def _stored_version(self) -> int | None:
        if not self.path.exists():
            return None
        try:
            with self.path.open("r", encoding="utf-8") as handle:
                document = yaml.safe_load(handle) or {}
        except yaml.YAMLError:
            return None
        metadata = document.get("metadata") if isinstance(document, Mapping) else None
        if isinstance(metadata, Mapping) and isinstance(metadata.get("version"), int):
            return metadata["version"]
        return None

    def save(self, session: Session, *, force: bool = False) -> Path:
        """Persist ``session``; refuses to overwrite a newer or equal version."""
        stored = self._stored_version()
        if not force and stored is not None and session.version <= stored:
            raise ConfigError(
                f"Plan document {self.path} is at version {stored}; refusing to write version {session.version}.",
                action="Reload the plan document and rerun the stage.",
            )
        self.path.parent.mkdir(parents=True, exist_ok=True)
        document = session_to_document(session)
        temp_path = self.path.with_name(f".{self.path.name}.tmp")
        with temp_path.open("w", encoding="utf-8") as handle:
            yaml.safe_dump(document, handle, sort_keys=False)
        os.replace(temp_path, self.path)
        LOGGER.debug("Saved plan document %s (version %d, stage %s)", self.path, session.version, session.stage.value)
        return self.path

    def archive(self) -> Path | None:
        """Move the plan document into the archive directory."""
        if not self.path.exists():
            return None
        self.archive_dir.mkdir(parents=True, exist_ok=True)
        stamp = utc_now().strftime("%Y%m%dT%H%M%SZ")
        target = self.archive_dir / f"{self.path.stem}-{stamp}{self.path.suffix}"
        os.replace(self.path, target)
        LOGGER.info("Archived plan document to %s", target)
        return target


__all__ = ["PlanStore", "session_from_document", "session_to_document"]
