from unittest.mock import MagicMock

from audit import record_audit_event


def test_audit_record_fields(store):
    audit_id = record_audit_event(store, 'org-1', 'u1', 'client.created', 'client', 'c1',
                                  metadata={'name': 'Acme'})

    record = store.get(f'organizations/org-1/audit_events/{audit_id}')
    assert record['id'] == audit_id
    assert record['orgId'] == 'org-1'
    assert record['actorUid'] == 'u1'
    assert record['action'] == 'client.created'
    assert record['entityType'] == 'client'
    assert record['entityId'] == 'c1'
    assert record['metadata'] == {'name': 'Acme'}
    assert record['timestamp'] is not None
    assert 'caseId' not in record


def test_case_id_inferred_from_metadata(store):
    audit_id = record_audit_event(store, 'org-1', 'u1', 'invoice.created', 'invoice', 'inv-1',
                                  metadata={'caseId': 'case-7'})
    assert store.get(f'organizations/org-1/audit_events/{audit_id}')['caseId'] == 'case-7'


def test_explicit_case_id_wins(store):
    audit_id = record_audit_event(store, 'org-1', 'u1', 'x', 'y', 'z', metadata={'caseId': 'a'}, case_id='b')
    assert store.get(f'organizations/org-1/audit_events/{audit_id}')['caseId'] == 'b'


def test_no_metadata_field_when_empty(store):
    audit_id = record_audit_event(store, 'org-1', 'u1', 'x', 'y', 'z')
    assert 'metadata' not in store.get(f'organizations/org-1/audit_events/{audit_id}')


def test_write_failure_is_swallowed():
    broken_store = MagicMock()
    broken_store.set.side_effect = RuntimeError("quota exceeded")

    assert record_audit_event(broken_store, 'org-1', 'u1', 'x', 'y', 'z') is None
