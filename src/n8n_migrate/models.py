"""Record types carried through export and import."""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from typing import Any, Optional

UNKNOWN_WORKFLOW_NAME = "Unknown"


@dataclass(slots=True)
class WorkflowRecord:
    """One n8n workflow as exported by ``n8n export:workflow``.

    ``payload`` keeps every field n8n emitted so nothing is lost on re-import;
    ``identifier`` and ``active`` are lifted out because they are the two
    fields sanitization rewrites.
    """

    name: str
    identifier: Optional[str]
    active: bool
    payload: dict[str, Any] = field(default_factory=dict)
    owner_project_ref: Optional[str] = None

    @classmethod
    def from_export(cls, data: dict[str, Any]) -> "WorkflowRecord":
        raw_id = data.get("id")
        project = data.get("project")
        owner = data.get("projectId")
        if not owner and isinstance(project, dict):
            owner = project.get("id")
        return cls(
            name=str(data.get("name") or UNKNOWN_WORKFLOW_NAME),
            identifier=str(raw_id) if raw_id not in (None, "") else None,
            active=_truthy(data.get("active", False)),
            payload=copy.deepcopy(data),
            owner_project_ref=str(owner) if owner else None,
        )

    @property
    def project_name(self) -> str:
        project = self.payload.get("project")
        if isinstance(project, dict):
            return str(project.get("name") or "")
        return ""

    def to_sanitized(self) -> dict[str, Any]:
        sanitized = copy.deepcopy(self.payload)
        sanitized.pop("id", None)
        sanitized["active"] = False
        return sanitized


@dataclass(slots=True, frozen=True)
class ActivationEntry:
    name: str
    was_active: bool
    source_id: str


@dataclass(slots=True, frozen=True)
class OwnerEntry:
    name: str
    project_id: str
    project_name: str


@dataclass(slots=True)
class CredentialRecord:
    """A decrypted credential as produced by ``n8n export:credentials --decrypted``."""

    name: str
    type: str
    identifier: Optional[str]
    payload: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_export(cls, data: dict[str, Any]) -> "CredentialRecord":
        raw_id = data.get("id")
        return cls(
            name=str(data.get("name") or ""),
            type=str(data.get("type") or ""),
            identifier=str(raw_id) if raw_id not in (None, "") else None,
            payload=copy.deepcopy(data),
        )


def _truthy(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "t", "yes"}
    return bool(value)
