"""Audit record schema enforcement."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from jsonschema import Draft7Validator

AUDIT_ACTIONS = [
    "addvenue",
    "addvsite",
    "addvnode",
    "chvnode",
    "delvnode",
    "addvhost",
    "chvhost",
    "delvhost",
    "addvconf",
    "chvconf",
    "delvconf",
    "validate",
    "repair",
    "chperms",
    "addvmail",
    "delvmail",
    "addvalias",
    "delvalias",
    "addpw",
    "chpw",
    "delpw",
    "bl-sync",
]

AUDIT_SCHEMA: Dict[str, Any] = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "type": "object",
    "required": ["timestamp", "actor", "action", "target", "success", "detail", "context"],
    "properties": {
        "timestamp": {"type": "string", "format": "date-time"},
        "actor": {"type": "string", "minLength": 1},
        "action": {"type": "string", "enum": AUDIT_ACTIONS},
        "target": {"type": "string"},
        "success": {"type": "boolean"},
        "detail": {"type": "string"},
        "context": {"type": "object"},
    },
    "additionalProperties": False,
}

_validator = Draft7Validator(AUDIT_SCHEMA)


def validate_audit(payload: Dict[str, Any]) -> None:
    errors = sorted(_validator.iter_errors(payload), key=lambda e: list(e.path))
    if errors:
        messages = ", ".join(error.message for error in errors)
        raise ValueError(f"audit record validation failed: {messages}")


@dataclass
class AuditRecord:
    action: str
    target: str
    success: bool = True
    detail: str = ""
    actor: str = "nsctl"
    context: Optional[Dict[str, Any]] = None
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> Dict[str, Any]:
        payload = {
            "timestamp": self.timestamp,
            "actor": self.actor,
            "action": self.action,
            "target": self.target,
            "success": self.success,
            "detail": self.detail,
            "context": self.context or {},
        }
        validate_audit(payload)
        return payload
