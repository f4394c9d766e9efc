import pytest

from droplet.observability import TransitionRecord, validate_transition


def test_transition_record_schema_roundtrip():
    record = TransitionRecord(
        from_state="starting",
        to_state="up",
        reason="provisioned",
        droplet_id=42,
        ipv4="1.2.3.4",
    )

    payload = record.to_dict()

    assert payload["to_state"] == "up"
    assert payload["forced"] is False
    assert payload["droplet_id"] == 42


def test_unknown_state_rejected():
    record = TransitionRecord(from_state="down", to_state="exploded", reason="x")
    with pytest.raises(ValueError, match="validation failed"):
        record.to_dict()


def test_empty_reason_rejected():
    with pytest.raises(ValueError):
        TransitionRecord(from_state="down", to_state="up", reason="").to_dict()


def test_extra_fields_rejected():
    payload = TransitionRecord(from_state="down", to_state="up", reason="forced").to_dict()
    payload["note"] = "nope"
    with pytest.raises(ValueError):
        validate_transition(payload)
