import pytest

from fleet.audit import AUDIT_ACTIONS, AuditRecord, validate_audit


def test_record_round_trips_through_schema():
    record = AuditRecord(action="addvhost", target="markc/example.com", detail="provisioned",
                         context={"uid": "1001"})
    payload = record.to_dict()

    assert payload["action"] == "addvhost"
    assert payload["success"] is True
    assert payload["actor"] == "nsctl"
    assert payload["context"] == {"uid": "1001"}


def test_missing_context_becomes_empty_object():
    payload = AuditRecord(action="chperms", target="markc/example.com").to_dict()
    assert payload["context"] == {}


def test_unknown_action_rejected():
    with pytest.raises(ValueError, match="audit record validation failed"):
        AuditRecord(action="reboot", target="markc").to_dict()


def test_extra_fields_rejected():
    payload = AuditRecord(action="addpw", target="db").to_dict()
    payload["password"] = "leak"
    with pytest.raises(ValueError):
        validate_audit(payload)


def test_empty_actor_rejected():
    with pytest.raises(ValueError):
        AuditRecord(action="addpw", target="db", actor="").to_dict()


def test_every_cli_mutation_has_an_action():
    for action in ("addvnode", "delvnode", "addvhost", "delvhost", "addvmail",
                   "addvalias", "delvalias", "repair", "bl-sync"):
        assert action in AUDIT_ACTIONS
