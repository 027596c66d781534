"""
Unit tests for the entitlement evaluator and its error translation.
"""
import pytest

from constants import PLAN_FEATURES, ROLE_PERMISSIONS
from entitlements import (
    DenyReason,
    EntitlementDecision,
    entitlement_error,
    evaluate_entitlement,
    require_entitlement,
)
from errors import ErrorCode, HandlerError
from tests.helpers.factories import seed_member, seed_org


def test_missing_org_id_is_org_required(store):
    decision = evaluate_entitlement(store, 'u1', None)
    assert decision == EntitlementDecision(allowed=False, reason=DenyReason.ORG_REQUIRED)


def test_non_member_is_reported_before_plan_limit(store):
    seed_org(store, 'org-1', plan='FREE', members={'someone-else': 'ADMIN'})

    # FREE lacks BILLING_INVOICING, but membership is checked first.
    decision = evaluate_entitlement(store, 'outsider', 'org-1', 'BILLING_INVOICING', 'billing.manage')

    assert decision.allowed is False
    assert decision.reason == DenyReason.ORG_MEMBER


def test_membership_without_org_document_is_org_member(store):
    seed_member(store, 'ghost-org', 'u1', 'ADMIN')
    decision = evaluate_entitlement(store, 'u1', 'ghost-org')
    assert decision.reason == DenyReason.ORG_MEMBER


def test_plan_checked_before_role(store):
    seed_org(store, 'org-1', plan='FREE', members={'viewer': 'VIEWER'})
    decision = evaluate_entitlement(store, 'viewer', 'org-1', 'BILLING_INVOICING', 'billing.manage')
    assert decision.reason == DenyReason.PLAN_LIMIT
    assert decision.plan == 'FREE'
    assert decision.role == 'VIEWER'


def test_role_blocked(store):
    seed_org(store, 'org-1', plan='BASIC', members={'viewer': 'VIEWER'})
    decision = evaluate_entitlement(store, 'viewer', 'org-1', 'CLIENTS', 'client.create')
    assert decision.reason == DenyReason.ROLE_BLOCKED


def test_unknown_plan_denies_any_feature(store):
    seed_org(store, 'org-1', plan='PLATINUM', members={'admin': 'ADMIN'})
    decision = evaluate_entitlement(store, 'admin', 'org-1', 'CLIENTS')
    assert decision.reason == DenyReason.PLAN_LIMIT


def test_unknown_role_denies_any_permission(store):
    seed_org(store, 'org-1', plan='PRO', members={'odd': 'INTERN'})
    decision = evaluate_entitlement(store, 'odd', 'org-1', required_permission='case.read')
    assert decision.reason == DenyReason.ROLE_BLOCKED


def test_missing_plan_defaults_to_free(store):
    seed_org(store, 'org-1', members={'admin': 'ADMIN'})
    store.update('organizations/org-1', {'plan': None})
    decision = evaluate_entitlement(store, 'admin', 'org-1', 'CLIENTS', 'client.create')
    assert decision.allowed is True
    assert decision.plan == 'FREE'


def test_allowed_decision_carries_plan_and_role(store):
    seed_org(store, 'org-1', plan='PRO', members={'lawyer': 'LAWYER'})
    decision = evaluate_entitlement(store, 'lawyer', 'org-1', 'AI_DRAFTING', 'ai.draft')
    assert decision == EntitlementDecision(allowed=True, plan='PRO', role='LAWYER')


def test_decision_reflects_current_state_on_every_call(store):
    seed_org(store, 'org-1', plan='FREE', members={'admin': 'ADMIN'})
    assert evaluate_entitlement(store, 'admin', 'org-1', 'TIME_TRACKING').allowed is False

    store.update('organizations/org-1', {'plan': 'BASIC'})

    assert evaluate_entitlement(store, 'admin', 'org-1', 'TIME_TRACKING').allowed is True


def test_plan_tiers_are_cumulative():
    assert PLAN_FEATURES['FREE'] < PLAN_FEATURES['BASIC'] < PLAN_FEATURES['PRO']
    assert PLAN_FEATURES['PRO'] == PLAN_FEATURES['ENTERPRISE']


def test_role_permissions_are_cumulative():
    assert ROLE_PERMISSIONS['VIEWER'] < ROLE_PERMISSIONS['PARALEGAL'] < ROLE_PERMISSIONS['LAWYER']
    assert ROLE_PERMISSIONS['LAWYER'] < ROLE_PERMISSIONS['ADMIN']
    assert ROLE_PERMISSIONS['ADMIN'] == ROLE_PERMISSIONS['OWNER']
    assert 'admin.manage_users' not in ROLE_PERMISSIONS['LAWYER']


@pytest.mark.parametrize("reason, code", [
    (DenyReason.ORG_REQUIRED, ErrorCode.ORG_REQUIRED),
    (DenyReason.ORG_MEMBER, ErrorCode.NOT_AUTHORIZED),
    (DenyReason.ROLE_BLOCKED, ErrorCode.NOT_AUTHORIZED),
    (DenyReason.PLAN_LIMIT, ErrorCode.PLAN_LIMIT),
])
def test_entitlement_error_codes(reason, code):
    error = entitlement_error(EntitlementDecision(allowed=False, reason=reason))
    assert error.code == code


def test_entitlement_error_uses_custom_message():
    decision = EntitlementDecision(allowed=False, reason=DenyReason.PLAN_LIMIT)
    error = entitlement_error(decision, {DenyReason.PLAN_LIMIT: 'Upgrade to BASIC'})
    assert error.message == 'Upgrade to BASIC'


def test_entitlement_error_falls_back_to_default_message():
    error = entitlement_error(EntitlementDecision(allowed=False, reason=DenyReason.ROLE_BLOCKED))
    assert error.message == 'You do not have permission to perform this action'


def test_require_entitlement_raises_on_deny(store):
    seed_org(store, 'org-1', members={'viewer': 'VIEWER'})
    with pytest.raises(HandlerError) as exc_info:
        require_entitlement(store, 'viewer', 'org-1', 'CLIENTS', 'client.delete')
    assert exc_info.value.code == ErrorCode.NOT_AUTHORIZED


def test_require_entitlement_returns_decision_on_allow(store):
    seed_org(store, 'org-1', members={'admin': 'ADMIN'})
    decision = require_entitlement(store, 'admin', 'org-1', 'CLIENTS', 'client.delete')
    assert decision.allowed is True
