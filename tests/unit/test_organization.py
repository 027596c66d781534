"""
Unit tests for organization creation, joining and membership lookup.
"""
import pytest

from organization import create_organization, get_my_membership, join_organization
from tests.helpers.factories import seed_org


def test_create_organization_success(store, caller):
    result = create_organization(store, caller('founder'), {'name': 'Unit Test Org', 'description': 'A firm'})

    assert result['success'] is True
    data = result['data']
    assert data['name'] == 'Unit Test Org'
    assert data['plan'] == 'FREE'
    assert data['createdBy'] == 'founder'
    assert data['createdAt'].endswith('Z')

    org = store.get(f"organizations/{data['orgId']}")
    assert org['description'] == 'A firm'
    member = store.get(f"organizations/{data['orgId']}/members/founder")
    assert member['role'] == 'ADMIN'
    assert store.committed_batches == 1


def test_create_organization_writes_audit_record(store, caller):
    org_id = create_organization(store, caller('founder'), {'name': 'Audited'})['data']['orgId']
    audits = store.documents(f'organizations/{org_id}/audit_events')
    assert [a['action'] for a in audits] == ['org.created']


@pytest.mark.parametrize("payload, message", [
    ({}, 'Organization name must be 1-100 characters'),
    ({'name': '   '}, 'Organization name must be 1-100 characters'),
    ({'name': 'x' * 101}, 'Organization name must be 1-100 characters'),
    ({'name': 'Bad<script>'}, 'Organization name contains invalid characters'),
    ({'name': 'Fine', 'description': 'd' * 501}, 'Organization description must be 500 characters or less'),
])
def test_create_organization_validation(store, caller, payload, message):
    result = create_organization(store, caller('founder'), payload)

    assert result['success'] is False
    assert result['error']['code'] == 'VALIDATION_ERROR'
    assert result['error']['message'] == message
    assert store.paths() == []


def test_create_organization_batch_failure_writes_nothing(store, caller):
    store.fail_batch_commits = True

    result = create_organization(store, caller('founder'), {'name': 'Doomed'})

    assert result['error']['code'] == 'INTERNAL_ERROR'
    assert store.paths() == []


def test_join_organization_as_viewer(store, caller):
    seed_org(store, 'org-1', members={'founder': 'ADMIN'})

    result = join_organization(store, caller('newbie'), {'orgId': 'org-1'})

    assert result['success'] is True
    assert result['data']['role'] == 'VIEWER'
    assert store.get('organizations/org-1/members/newbie')['role'] == 'VIEWER'
    audits = store.documents('organizations/org-1/audit_events')
    assert [a['action'] for a in audits] == ['member.added']


def test_join_organization_twice_is_idempotent(store, caller):
    seed_org(store, 'org-1', members={'founder': 'ADMIN'})
    join_organization(store, caller('newbie'), {'orgId': 'org-1'})

    again = join_organization(store, caller('newbie'), {'orgId': 'org-1'})

    assert again['success'] is True
    assert again['data']['message'] == 'Already a member'
    assert again['data']['role'] == 'VIEWER'
    assert len(store.documents('organizations/org-1/audit_events')) == 1


def test_join_existing_admin_keeps_role(store, caller):
    seed_org(store, 'org-1', members={'founder': 'ADMIN'})
    result = join_organization(store, caller('founder'), {'orgId': 'org-1'})
    assert result['data']['role'] == 'ADMIN'


def test_join_missing_organization(store, caller):
    result = join_organization(store, caller('newbie'), {'orgId': 'nope'})
    assert result['error'] == {'code': 'NOT_FOUND', 'message': 'Organization does not exist'}


def test_join_requires_org_id(store, caller):
    result = join_organization(store, caller('newbie'), {})
    assert result['error'] == {'code': 'VALIDATION_ERROR', 'message': 'Organization ID is required'}


def test_get_my_membership(store, caller):
    seed_org(store, 'org-1', plan='PRO', members={'lawyer': 'LAWYER'}, name='Smith LLP')

    result = get_my_membership(store, caller('lawyer'), {'orgId': 'org-1'})

    assert result['data'] == {
        'orgId': 'org-1',
        'uid': 'lawyer',
        'role': 'LAWYER',
        'plan': 'PRO',
        'joinedAt': '2024-03-01T12:00:00.000Z',
        'orgName': 'Smith LLP',
    }


def test_get_my_membership_not_member(store, caller):
    seed_org(store, 'org-1', members={'lawyer': 'LAWYER'})
    result = get_my_membership(store, caller('stranger'), {'orgId': 'org-1'})
    assert result['error']['code'] == 'NOT_FOUND'
    assert result['error']['message'] == 'You are not a member of this organization'
