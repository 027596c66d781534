"""
Unit tests for FirestoreStore against a mocked Firestore client.
"""
import pytest
from google.api_core.exceptions import AlreadyExists, NotFound
from google.cloud.firestore_v1.base_query import FieldFilter

from common.database import DocumentNotFoundError, FirestoreStore


@pytest.fixture
def client(mocker):
    return mocker.MagicMock()


@pytest.fixture
def firestore_store(client):
    return FirestoreStore(client)


def test_get_missing_document(client, firestore_store):
    client.document.return_value.get.return_value.exists = False
    assert firestore_store.get('organizations/org-1') is None
    client.document.assert_called_with('organizations/org-1')


def test_get_existing_document(client, firestore_store):
    snapshot = client.document.return_value.get.return_value
    snapshot.exists = True
    snapshot.to_dict.return_value = {'name': 'Acme'}
    assert firestore_store.get('organizations/org-1') == {'name': 'Acme'}


def test_create_reports_existing_document(client, firestore_store):
    client.document.return_value.create.side_effect = AlreadyExists('exists')
    assert firestore_store.create('outbox/notif:org-1:evt-1', {}) is False


def test_create_new_document(client, firestore_store):
    assert firestore_store.create('outbox/notif:org-1:evt-1', {'status': 'pending'}) is True
    client.document.return_value.create.assert_called_once_with({'status': 'pending'})


def test_update_missing_document(client, firestore_store):
    client.document.return_value.update.side_effect = NotFound('missing')
    with pytest.raises(DocumentNotFoundError) as exc_info:
        firestore_store.update('organizations/org-1/clients/c1', {'name': 'x'})
    assert exc_info.value.path == 'organizations/org-1/clients/c1'


def test_query_applies_filters_order_and_limit(client, firestore_store, mocker):
    collection = client.collection.return_value
    filtered = collection.where.return_value
    ordered = filtered.order_by.return_value
    limited = ordered.limit.return_value
    snap = mocker.MagicMock(id='c1')
    snap.reference.path = 'organizations/org-1/comments/c1'
    snap.to_dict.return_value = {'body': 'hi'}
    limited.stream.return_value = [snap]

    results = firestore_store.query('organizations/org-1/comments', [('matterId', '==', 'case-1')],
                                    order_by='createdAt', descending=True, limit=10)

    client.collection.assert_called_once_with('organizations/org-1/comments')
    applied = collection.where.call_args.kwargs['filter']
    assert isinstance(applied, FieldFilter)
    assert (applied.field_path, applied.op_string, applied.value) == ('matterId', '==', 'case-1')
    assert filtered.order_by.call_args.args == ('createdAt',)
    ordered.limit.assert_called_once_with(10)
    assert [(d.id, d.path, d.data) for d in results] == [('c1', 'organizations/org-1/comments/c1', {'body': 'hi'})]


def test_collection_group_query(client, firestore_store):
    group = client.collection_group.return_value
    group.where.return_value.stream.return_value = []

    assert firestore_store.collection_group_query('invitations', [('inviteCode', '==', 'ABCDEFGH')]) == []
    client.collection_group.assert_called_once_with('invitations')


def test_new_id(client, firestore_store):
    client.collection.return_value.document.return_value.id = 'generated-id'
    assert firestore_store.new_id('organizations') == 'generated-id'
