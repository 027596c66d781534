"""
Entitlement evaluation: membership, plan feature and role permission gates.
"""
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from common.database import DocumentStore, doc_path
from constants import (
    COLLECTION_MEMBERS,
    COLLECTION_ORGANIZATIONS,
    PLAN_FEATURES,
    PLAN_FREE,
    ROLE_PERMISSIONS,
)
from errors import ErrorCode, HandlerError

logger = logging.getLogger(__name__)


class DenyReason(str, Enum):
    ORG_REQUIRED = "ORG_REQUIRED"
    ORG_MEMBER = "ORG_MEMBER"
    PLAN_LIMIT = "PLAN_LIMIT"
    ROLE_BLOCKED = "ROLE_BLOCKED"


@dataclass(frozen=True)
class EntitlementDecision:
    allowed: bool
    reason: Optional[DenyReason] = None
    plan: Optional[str] = None
    role: Optional[str] = None


def evaluate_entitlement(
    store: DocumentStore,
    uid: str,
    org_id: Optional[str],
    required_feature: Optional[str] = None,
    required_permission: Optional[str] = None,
) -> EntitlementDecision:
    """
    Decide whether uid may act in org_id.

    Gates run in order membership -> plan -> role and the first failing one is
    reported, so a non-member is told ORG_MEMBER even when the plan would also
    deny the feature. Nothing is cached; every call reads current state.
    """
    if not org_id:
        return EntitlementDecision(allowed=False, reason=DenyReason.ORG_REQUIRED)

    member = store.get(doc_path(COLLECTION_ORGANIZATIONS, org_id, COLLECTION_MEMBERS, uid))
    if member is None:
        return EntitlementDecision(allowed=False, reason=DenyReason.ORG_MEMBER)

    org = store.get(doc_path(COLLECTION_ORGANIZATIONS, org_id))
    if org is None:
        logger.warning(f"Membership {uid} exists for missing organization {org_id}")
        return EntitlementDecision(allowed=False, reason=DenyReason.ORG_MEMBER)

    plan = org.get("plan") or PLAN_FREE
    role = member.get("role")

    if required_feature:
        features = PLAN_FEATURES.get(plan)
        if features is None or required_feature not in features:
            return EntitlementDecision(allowed=False, reason=DenyReason.PLAN_LIMIT, plan=plan, role=role)

    if required_permission:
        permissions = ROLE_PERMISSIONS.get(role)
        if permissions is None or required_permission not in permissions:
            return EntitlementDecision(allowed=False, reason=DenyReason.ROLE_BLOCKED, plan=plan, role=role)

    return EntitlementDecision(allowed=True, plan=plan, role=role)


def entitlement_error(decision: EntitlementDecision, messages: Optional[dict] = None) -> HandlerError:
    """Translate a deny decision into the HandlerError a handler should raise.

    `messages` optionally overrides the default text per DenyReason.
    """
    messages = messages or {}
    if decision.reason == DenyReason.ORG_REQUIRED:
        code = ErrorCode.ORG_REQUIRED
    elif decision.reason == DenyReason.PLAN_LIMIT:
        code = ErrorCode.PLAN_LIMIT
    else:
        code = ErrorCode.NOT_AUTHORIZED
    return HandlerError(code, messages.get(decision.reason))


def require_entitlement(
    store: DocumentStore,
    uid: str,
    org_id: Optional[str],
    required_feature: Optional[str] = None,
    required_permission: Optional[str] = None,
    messages: Optional[dict] = None,
) -> EntitlementDecision:
    decision = evaluate_entitlement(store, uid, org_id, required_feature, required_permission)
    if not decision.allowed:
        raise entitlement_error(decision, messages)
    return decision
