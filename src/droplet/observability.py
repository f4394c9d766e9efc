"""Lifecycle transition records with schema enforcement."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from jsonschema import Draft7Validator

STATES = ["down", "starting", "up", "stopping", "weird"]

TRANSITION_SCHEMA: Dict[str, Any] = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "type": "object",
    "required": ["from_state", "to_state", "reason", "forced", "at"],
    "properties": {
        "from_state": {"type": "string", "enum": STATES},
        "to_state": {"type": "string", "enum": STATES},
        "reason": {"type": "string", "minLength": 1},
        "forced": {"type": "boolean"},
        "droplet_id": {"type": ["integer", "null"]},
        "ipv4": {"type": ["string", "null"]},
        "at": {"type": "string", "format": "date-time"},
    },
    "additionalProperties": False,
}

_validator = Draft7Validator(TRANSITION_SCHEMA)


def validate_transition(payload: Dict[str, Any]) -> None:
    errors = sorted(_validator.iter_errors(payload), key=lambda e: e.path)
    if errors:
        messages = ", ".join(error.message for error in errors)
        raise ValueError(f"transition record validation failed: {messages}")


@dataclass
class TransitionRecord:
    from_state: str
    to_state: str
    reason: str
    forced: bool = False
    droplet_id: Optional[int] = None
    ipv4: Optional[str] = None
    at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> Dict[str, Any]:
        payload = {
            "from_state": self.from_state,
            "to_state": self.to_state,
            "reason": self.reason,
            "forced": self.forced,
            "droplet_id": self.droplet_id,
            "ipv4": self.ipv4,
            "at": self.at,
        }
        validate_transition(payload)
        return payload
