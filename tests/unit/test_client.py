"""
Unit tests for client handlers.
"""
import pytest

import client as client_module
from client import create_client, delete_client, get_client, list_clients, update_client
from organization import create_organization
from tests.helpers.factories import seed_case, seed_org


def test_org_then_client_lifecycle(store, caller):
    founder = caller('founder')
    org_id = create_organization(store, founder, {'name': 'Acme Legal'})['data']['orgId']

    created = create_client(store, founder, {'orgId': org_id, 'name': 'Acme Corp'})
    assert created['success'] is True
    assert created['data']['name'] == 'Acme Corp'
    assert created['data']['email'] is None
    assert created['data']['phone'] is None
    client_id = created['data']['clientId']

    fetched = get_client(store, founder, {'orgId': org_id, 'clientId': client_id})
    assert fetched['data']['name'] == 'Acme Corp'
    assert fetched['data']['deletedAt'] is None

    deleted = delete_client(store, founder, {'orgId': org_id, 'clientId': client_id})
    assert deleted['data'] == {'clientId': client_id, 'message': 'Client deleted successfully'}

    after = get_client(store, founder, {'orgId': org_id, 'clientId': client_id})
    assert after['error']['code'] == 'NOT_FOUND'
    assert after['error']['message'] == 'Client not found'


def test_create_client_emits_event_and_audit(store, caller, org):
    result = create_client(store, caller('lawyer-1'), {'orgId': org, 'name': 'Globex', 'email': 'a@globex.com'})
    client_id = result['data']['clientId']

    events = store.documents('domain_events')
    assert len(events) == 1
    assert events[0]['eventType'] == 'client.created'
    assert events[0]['entityId'] == client_id
    assert events[0]['payload'] == {'title': 'Globex', 'email': 'a@globex.com'}
    assert len(store.documents('outbox')) == 1

    audits = store.documents(f'organizations/{org}/audit_events')
    assert [a['action'] for a in audits] == ['client.created']


def test_notify_failure_does_not_change_response(store, caller, org, mocker):
    mocker.patch.object(client_module, 'record_audit_event', return_value=None)
    expected = create_client(store, caller('lawyer-1'), {'orgId': org, 'name': 'Initech'})

    store.fail_batch_commits = True
    result = create_client(store, caller('lawyer-1'), {'orgId': org, 'name': 'Initech'})

    assert result['success'] is True
    assert {k: v for k, v in result['data'].items() if k not in ('clientId', 'createdAt', 'updatedAt')} == \
        {k: v for k, v in expected['data'].items() if k not in ('clientId', 'createdAt', 'updatedAt')}
    assert store.get(f"organizations/{org}/clients/{result['data']['clientId']}") is not None


def test_audit_failure_does_not_change_response(store, caller, org, mocker):
    mocker.patch.object(store, 'new_id', side_effect=['client-1', RuntimeError('audit id failure')])
    result = create_client(store, caller('lawyer-1'), {'orgId': org, 'name': 'Hooli'})
    assert result['success'] is True
    assert result['data']['clientId'] == 'client-1'


def test_create_client_requires_org(store, caller):
    result = create_client(store, caller('u1'), {'name': 'Acme'})
    assert result['error'] == {'code': 'ORG_REQUIRED', 'message': 'Organization ID is required'}


@pytest.mark.parametrize("payload, message", [
    ({}, 'Client name must be 1-200 characters'),
    ({'name': ''}, 'Client name must be 1-200 characters'),
    ({'name': 'n' * 201}, 'Client name must be 1-200 characters'),
    ({'name': 'Acme', 'email': 'not-an-email'}, 'Invalid email format'),
    ({'name': 'Acme', 'phone': '1' * 51}, 'Phone must be 50 characters or less'),
    ({'name': 'Acme', 'notes': 'n' * 1001}, 'Notes must be 1000 characters or less'),
])
def test_create_client_validation(store, caller, org, payload, message):
    result = create_client(store, caller('lawyer-1'), {'orgId': org, **payload})
    assert result['error']['code'] == 'VALIDATION_ERROR'
    assert result['error']['message'] == message


def test_create_client_entitlement_errors(store, caller, org):
    not_member = create_client(store, caller('stranger'), {'orgId': org, 'name': 'Acme'})
    assert not_member['error'] == {'code': 'NOT_AUTHORIZED', 'message': 'User is not a member of this organization'}

    viewer = create_client(store, caller('viewer-1'), {'orgId': org, 'name': 'Acme'})
    assert viewer['error'] == {'code': 'NOT_AUTHORIZED',
                               'message': 'User role does not have permission to create clients'}


def test_list_clients_search_and_paging(store, caller, org):
    lawyer = caller('lawyer-1')
    for name in ('Acme Corp', 'Acme Labs', 'Globex'):
        create_client(store, lawyer, {'orgId': org, 'name': name})

    everything = list_clients(store, lawyer, {'orgId': org})['data']
    assert everything['total'] == 3
    assert everything['hasMore'] is False

    searched = list_clients(store, lawyer, {'orgId': org, 'search': 'acme', 'limit': 1})['data']
    assert searched['total'] == 2
    assert len(searched['clients']) == 1
    assert searched['hasMore'] is True


def test_list_clients_excludes_deleted(store, caller, org):
    lawyer = caller('lawyer-1')
    client_id = create_client(store, lawyer, {'orgId': org, 'name': 'Gone'})['data']['clientId']
    create_client(store, lawyer, {'orgId': org, 'name': 'Stays'})
    delete_client(store, lawyer, {'orgId': org, 'clientId': client_id})

    names = [c['name'] for c in list_clients(store, lawyer, {'orgId': org})['data']['clients']]
    assert names == ['Stays']


def test_viewer_can_read_clients(store, caller, org):
    create_client(store, caller('lawyer-1'), {'orgId': org, 'name': 'Acme'})
    assert list_clients(store, caller('viewer-1'), {'orgId': org})['data']['total'] == 1


def test_update_client_only_provided_fields(store, caller, org):
    lawyer = caller('lawyer-1')
    client_id = create_client(store, lawyer, {'orgId': org, 'name': 'Acme', 'phone': '555'})['data']['clientId']

    result = update_client(store, caller('paralegal-1'), {'orgId': org, 'clientId': client_id, 'email': 'x@acme.io'})

    assert result['data']['email'] == 'x@acme.io'
    assert result['data']['phone'] == '555'
    assert result['data']['updatedBy'] == 'paralegal-1'
    audit = [a for a in store.documents(f'organizations/{org}/audit_events') if a['action'] == 'client.updated']
    assert audit[0]['metadata'] == {'updatedFields': ['email']}


def test_update_client_validates_name(store, caller, org):
    lawyer = caller('lawyer-1')
    client_id = create_client(store, lawyer, {'orgId': org, 'name': 'Acme'})['data']['clientId']
    result = update_client(store, lawyer, {'orgId': org, 'clientId': client_id, 'name': ''})
    assert result['error']['message'] == 'Client name must be 1-200 characters'


def test_delete_client_blocked_by_live_case(store, caller, org):
    lawyer = caller('lawyer-1')
    client_id = create_client(store, lawyer, {'orgId': org, 'name': 'Acme'})['data']['clientId']
    seed_case(store, org, 'case-1', created_by='lawyer-1', client_id=client_id)

    result = delete_client(store, lawyer, {'orgId': org, 'clientId': client_id})

    assert result['error']['code'] == 'CONFLICT'
    assert store.get(f'organizations/{org}/clients/{client_id}')['deletedAt'] is None


def test_delete_client_ignores_deleted_cases(store, caller, org):
    lawyer = caller('lawyer-1')
    client_id = create_client(store, lawyer, {'orgId': org, 'name': 'Acme'})['data']['clientId']
    seed_case(store, org, 'case-1', created_by='lawyer-1', client_id=client_id, deleted=True)

    assert delete_client(store, lawyer, {'orgId': org, 'clientId': client_id})['success'] is True


def test_paralegal_cannot_delete(store, caller, org):
    client_id = create_client(store, caller('lawyer-1'), {'orgId': org, 'name': 'Acme'})['data']['clientId']
    result = delete_client(store, caller('paralegal-1'), {'orgId': org, 'clientId': client_id})
    assert result['error']['message'] == 'User role does not have permission to delete clients'


def test_get_client_requires_id(store, caller, org):
    result = get_client(store, caller('lawyer-1'), {'orgId': org})
    assert result['error'] == {'code': 'VALIDATION_ERROR', 'message': 'Client ID is required'}


def test_free_plan_has_clients(store, caller):
    seed_org(store, 'org-free', plan='FREE', members={'a': 'ADMIN'})
    assert create_client(store, caller('a'), {'orgId': 'org-free', 'name': 'Acme'})['success'] is True
