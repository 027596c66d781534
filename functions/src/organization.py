import logging
import re
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, field_validator

from audit import record_audit_event
from auth import AuthContext
from common.database import DocumentStore, doc_path
from constants import COLLECTION_MEMBERS, COLLECTION_ORGANIZATIONS, PLAN_FREE, ROLE_ADMIN, ROLE_VIEWER
from errors import ErrorCode, HandlerError
from response import callable_handler
from utils import parse_non_empty_string, to_iso, utcnow

logger = logging.getLogger(__name__)

ORG_NAME_PATTERN = re.compile(r'^[a-zA-Z0-9\s\-_&.,()]+$')


class CreateOrganizationRequest(BaseModel):
    name: str = Field(default=None, validate_default=True)
    description: Optional[str] = None

    @field_validator('name', mode='before')
    @classmethod
    def validate_name(cls, v: Any) -> str:
        name = v.strip() if isinstance(v, str) else ""
        if not name or len(name) > 100:
            raise ValueError("Organization name must be 1-100 characters")
        if not ORG_NAME_PATTERN.match(name):
            raise ValueError("Organization name contains invalid characters")
        return name

    @field_validator('description', mode='before')
    @classmethod
    def validate_description(cls, v: Any) -> Optional[str]:
        if v is None or v == "":
            return None
        if not isinstance(v, str) or len(v) > 500:
            raise ValueError("Organization description must be 500 characters or less")
        return v.strip() or None


def org_path(org_id: str) -> str:
    return doc_path(COLLECTION_ORGANIZATIONS, org_id)


def member_path(org_id: str, uid: str) -> str:
    return doc_path(COLLECTION_ORGANIZATIONS, org_id, COLLECTION_MEMBERS, uid)


def _require_org_id(data: Dict[str, Any]) -> str:
    org_id = parse_non_empty_string(data.get('orgId'), 200)
    if org_id is None:
        raise HandlerError(ErrorCode.VALIDATION_ERROR, "Organization ID is required")
    return org_id


@callable_handler("orgCreate")
def create_organization(store: DocumentStore, caller: AuthContext, data: Dict[str, Any]) -> Dict[str, Any]:
    """Create an organization on the FREE plan with the caller as its first ADMIN."""
    req = CreateOrganizationRequest.model_validate(data)
    org_id = store.new_id(COLLECTION_ORGANIZATIONS)
    now = utcnow()

    org_data = {
        'id': org_id,
        'name': req.name,
        'plan': PLAN_FREE,
        'createdAt': now,
        'updatedAt': now,
        'createdBy': caller.uid,
    }
    if req.description:
        org_data['description'] = req.description

    member_data = {
        'uid': caller.uid,
        'orgId': org_id,
        'role': ROLE_ADMIN,
        'joinedAt': now,
        'updatedAt': now,
        'createdBy': caller.uid,
    }

    batch = store.batch()
    batch.create(org_path(org_id), org_data)
    batch.create(member_path(org_id, caller.uid), member_data)
    batch.commit()
    logger.info(f"Organization {org_id} created by {caller.uid}")

    record_audit_event(store, org_id, caller.uid, 'org.created', 'organization', org_id,
                       metadata={'orgName': req.name})

    return {
        'orgId': org_id,
        'name': req.name,
        'plan': PLAN_FREE,
        'createdAt': to_iso(now),
        'createdBy': caller.uid,
    }


@callable_handler("orgJoin")
def join_organization(store: DocumentStore, caller: AuthContext, data: Dict[str, Any]) -> Dict[str, Any]:
    """Join an organization as VIEWER. Joining twice returns the existing membership."""
    org_id = _require_org_id(data)
    if store.get(org_path(org_id)) is None:
        raise HandlerError(ErrorCode.NOT_FOUND, "Organization does not exist")

    path = member_path(org_id, caller.uid)
    now = utcnow()

    def _join(transaction):
        existing = transaction.get(path)
        if existing is not None:
            return {
                'orgId': org_id,
                'role': existing.get('role'),
                'joinedAt': to_iso(existing.get('joinedAt')),
                'message': 'Already a member',
            }, False
        transaction.create(path, {
            'uid': caller.uid,
            'orgId': org_id,
            'role': ROLE_VIEWER,
            'joinedAt': now,
            'updatedAt': now,
            'createdBy': caller.uid,
        })
        return {'orgId': org_id, 'role': ROLE_VIEWER, 'joinedAt': to_iso(now)}, True

    result, created = store.run_transaction(_join)
    if created:
        record_audit_event(store, org_id, caller.uid, 'member.added', 'membership', caller.uid,
                           metadata={'role': ROLE_VIEWER})
    return result


@callable_handler("memberGetMyMembership")
def get_my_membership(store: DocumentStore, caller: AuthContext, data: Dict[str, Any]) -> Dict[str, Any]:
    org_id = _require_org_id(data)

    member = store.get(member_path(org_id, caller.uid))
    if member is None:
        raise HandlerError(ErrorCode.NOT_FOUND, "You are not a member of this organization")
    org = store.get(org_path(org_id))
    if org is None:
        raise HandlerError(ErrorCode.NOT_FOUND, "Organization does not exist")

    return {
        'orgId': org_id,
        'uid': caller.uid,
        'role': member.get('role'),
        'plan': org.get('plan') or PLAN_FREE,
        'joinedAt': to_iso(member.get('joinedAt')),
        'orgName': org.get('name'),
    }
