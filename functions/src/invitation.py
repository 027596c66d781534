import logging
import secrets
from datetime import timedelta
from typing import Any, Dict

from pydantic import BaseModel, Field, field_validator

from audit import record_audit_event
from auth import AuthContext, find_user_id_by_email, lookup_user_email
from common import config
from common.database import DocumentStore, doc_path
from constants import COLLECTION_INVITATIONS, COLLECTION_MEMBERS, COLLECTION_ORGANIZATIONS, INVITABLE_ROLES
from domain_events import emit_domain_event_with_outbox, user_actor
from entitlements import evaluate_entitlement
from errors import ErrorCode, HandlerError
from response import callable_handler
from utils import clamp_pagination, require_id, require_org_id, to_iso, utcnow

logger = logging.getLogger(__name__)

INVITE_CODE_ALPHABET = 'ABCDEFGHJKLMNPQRSTUVWXYZ23456789'  # no 0/O/1/I
INVITE_CODE_LENGTH = 8

STATUS_PENDING = 'pending'
STATUS_ACCEPTED = 'accepted'
STATUS_REVOKED = 'revoked'
STATUS_EXPIRED = 'expired'
LISTABLE_STATUSES = (STATUS_PENDING, STATUS_ACCEPTED, STATUS_REVOKED, STATUS_EXPIRED)


class CreateInvitationRequest(BaseModel):
    email: str = Field(default=None, validate_default=True)
    role: str = Field(default=None, validate_default=True)

    @field_validator('email', mode='before')
    @classmethod
    def validate_email(cls, v: Any) -> str:
        if not isinstance(v, str) or '@' not in v:
            raise ValueError('Valid email is required')
        return v.strip().lower()

    @field_validator('role', mode='before')
    @classmethod
    def validate_role(cls, v: Any) -> str:
        if v not in INVITABLE_ROLES:
            raise ValueError(f"Invalid role. Must be one of: {', '.join(INVITABLE_ROLES)}")
        return v


def generate_invite_code() -> str:
    return ''.join(secrets.choice(INVITE_CODE_ALPHABET) for _ in range(INVITE_CODE_LENGTH))


def invitations_collection(org_id: str) -> str:
    return doc_path(COLLECTION_ORGANIZATIONS, org_id, COLLECTION_INVITATIONS)


def _require_admin(store: DocumentStore, uid: str, org_id: str, action: str) -> None:
    decision = evaluate_entitlement(store, uid, org_id, required_permission='admin.manage_users')
    if not decision.allowed:
        raise HandlerError(ErrorCode.NOT_AUTHORIZED, f'Only administrators can {action} invitations')


@callable_handler("invitationCreate")
def create_invitation(store: DocumentStore, caller: AuthContext, data: Dict[str, Any]) -> Dict[str, Any]:
    org_id = require_org_id(data)
    req = CreateInvitationRequest.model_validate(data)
    _require_admin(store, caller.uid, org_id, 'send')

    org = store.get(doc_path(COLLECTION_ORGANIZATIONS, org_id))
    if org is None:
        raise HandlerError(ErrorCode.NOT_FOUND, 'Organization does not exist')

    pending = store.query(
        invitations_collection(org_id),
        filters=[('email', '==', req.email), ('status', '==', STATUS_PENDING)],
        limit=1,
    )
    if pending:
        raise HandlerError(ErrorCode.VALIDATION_ERROR, 'An invitation is already pending for this email')

    existing_uid = find_user_id_by_email(req.email)
    if existing_uid and store.get(doc_path(COLLECTION_ORGANIZATIONS, org_id, COLLECTION_MEMBERS, existing_uid)):
        raise HandlerError(ErrorCode.VALIDATION_ERROR, 'This user is already a member of the organization')

    invitation_id = store.new_id(invitations_collection(org_id))
    invite_code = generate_invite_code()
    now = utcnow()
    expires_at = now + timedelta(days=config.INVITATION_TTL_DAYS)
    store.set(doc_path(invitations_collection(org_id), invitation_id), {
        'invitationId': invitation_id,
        'orgId': org_id,
        'email': req.email,
        'role': req.role,
        'inviteCode': invite_code,
        'status': STATUS_PENDING,
        'invitedBy': caller.uid,
        'invitedAt': now,
        'expiresAt': expires_at,
    })
    logger.info(f"Invitation created: {invitation_id} for {req.email}")

    record_audit_event(store, org_id, caller.uid, 'invitation.created', 'invitation', invitation_id,
                       metadata={'email': req.email, 'role': req.role, 'inviteCode': invite_code})
    emit_domain_event_with_outbox(
        store, org_id, 'user.invited', 'invitation', invitation_id, user_actor(caller.uid),
        payload={'email': req.email, 'role': req.role},
    )

    return {
        'invitationId': invitation_id,
        'orgId': org_id,
        'email': req.email,
        'role': req.role,
        'inviteCode': invite_code,
        'status': STATUS_PENDING,
        'invitedAt': to_iso(now),
        'expiresAt': to_iso(expires_at),
    }


@callable_handler("invitationAccept")
def accept_invitation(store: DocumentStore, caller: AuthContext, data: Dict[str, Any]) -> Dict[str, Any]:
    """
    Redeem an invite code. The membership create and the invitation status
    change happen in one transaction, and the invitation is re-read there so
    two concurrent accepts cannot both succeed.
    """
    invite_code = data.get('inviteCode')
    if not isinstance(invite_code, str) or len(invite_code) != INVITE_CODE_LENGTH:
        raise HandlerError(ErrorCode.VALIDATION_ERROR, 'Valid 8-character invite code is required')
    invite_code = invite_code.upper()

    matches = store.collection_group_query(
        COLLECTION_INVITATIONS,
        filters=[('inviteCode', '==', invite_code), ('status', '==', STATUS_PENDING)],
        limit=1,
    )
    if not matches:
        raise HandlerError(ErrorCode.NOT_FOUND, 'Invalid or expired invitation code')

    invitation_doc = matches[0]
    invitation = invitation_doc.data
    # organizations/{orgId}/invitations/{invitationId}
    org_id = invitation_doc.path.split('/')[1]

    now = utcnow()
    expires_at = invitation.get('expiresAt')
    if expires_at is not None and expires_at < now:
        raise HandlerError(ErrorCode.VALIDATION_ERROR, 'This invitation has expired')

    caller_email = (caller.email or lookup_user_email(caller.uid) or '').lower()
    if caller_email != invitation.get('email'):
        raise HandlerError(ErrorCode.NOT_AUTHORIZED, 'This invitation is for a different email address')

    member_path = doc_path(COLLECTION_ORGANIZATIONS, org_id, COLLECTION_MEMBERS, caller.uid)
    acceptance = {'status': STATUS_ACCEPTED, 'acceptedAt': now, 'acceptedBy': caller.uid}

    if store.get(member_path) is not None:
        store.update(invitation_doc.path, acceptance)
        raise HandlerError(ErrorCode.VALIDATION_ERROR, 'You are already a member of this organization')

    role = invitation.get('role')

    def _accept(transaction):
        fresh = transaction.get(invitation_doc.path)
        if fresh is None or fresh.get('status') != STATUS_PENDING:
            raise HandlerError(ErrorCode.VALIDATION_ERROR, 'Invitation is no longer valid')
        transaction.create(member_path, {
            'uid': caller.uid,
            'orgId': org_id,
            'role': role,
            'joinedAt': now,
            'updatedAt': now,
            'createdBy': invitation.get('invitedBy'),
        })
        transaction.update(invitation_doc.path, acceptance)

    store.run_transaction(_accept)
    logger.info(f"Invitation accepted: {invitation_doc.id} by {caller.uid}")

    record_audit_event(store, org_id, caller.uid, 'invitation.accepted', 'invitation', invitation_doc.id,
                       metadata={'email': invitation.get('email'), 'role': role, 'inviteCode': invite_code})
    emit_domain_event_with_outbox(
        store, org_id, 'user.joined', 'invitation', invitation_doc.id, user_actor(caller.uid),
        payload={'email': invitation.get('email'), 'role': role},
    )

    org = store.get(doc_path(COLLECTION_ORGANIZATIONS, org_id)) or {}
    return {
        'orgId': org_id,
        'orgName': org.get('name', ''),
        'role': role,
        'joinedAt': to_iso(now),
    }


@callable_handler("invitationRevoke")
def revoke_invitation(store: DocumentStore, caller: AuthContext, data: Dict[str, Any]) -> Dict[str, Any]:
    org_id = require_org_id(data)
    invitation_id = require_id(data, 'invitationId', 'Invitation ID')
    _require_admin(store, caller.uid, org_id, 'revoke')

    path = doc_path(invitations_collection(org_id), invitation_id)
    invitation = store.get(path)
    if invitation is None:
        raise HandlerError(ErrorCode.NOT_FOUND, 'Invitation not found')
    if invitation.get('status') == STATUS_REVOKED:
        raise HandlerError(ErrorCode.VALIDATION_ERROR, 'Invitation is already revoked')
    if invitation.get('status') == STATUS_ACCEPTED:
        raise HandlerError(ErrorCode.VALIDATION_ERROR, 'Cannot revoke an accepted invitation')

    now = utcnow()
    store.update(path, {'status': STATUS_REVOKED, 'revokedAt': now, 'revokedBy': caller.uid})
    record_audit_event(store, org_id, caller.uid, 'invitation.revoked', 'invitation', invitation_id,
                       metadata={'email': invitation.get('email'), 'role': invitation.get('role'),
                                 'inviteCode': invitation.get('inviteCode')})
    logger.info(f"Invitation revoked: {invitation_id} by {caller.uid}")
    return {'invitationId': invitation_id, 'status': STATUS_REVOKED, 'revokedAt': to_iso(now)}


def _invitation_to_response(invitation_id: str, invitation: Dict[str, Any], now) -> Dict[str, Any]:
    status = invitation.get('status')
    expires_at = invitation.get('expiresAt')
    if status == STATUS_PENDING and expires_at is not None and expires_at < now:
        status = STATUS_EXPIRED
    return {
        'invitationId': invitation_id,
        'email': invitation.get('email'),
        'role': invitation.get('role'),
        'status': status,
        'inviteCode': invitation.get('inviteCode'),
        'invitedBy': invitation.get('invitedBy'),
        'invitedAt': to_iso(invitation.get('invitedAt')),
        'expiresAt': to_iso(expires_at),
        'acceptedAt': to_iso(invitation.get('acceptedAt')),
        'acceptedBy': invitation.get('acceptedBy'),
        'revokedAt': to_iso(invitation.get('revokedAt')),
        'revokedBy': invitation.get('revokedBy'),
    }


@callable_handler("invitationList")
def list_invitations(store: DocumentStore, caller: AuthContext, data: Dict[str, Any]) -> Dict[str, Any]:
    org_id = require_org_id(data)
    _require_admin(store, caller.uid, org_id, 'view')

    status = data.get('status')
    if status and status not in LISTABLE_STATUSES:
        raise HandlerError(ErrorCode.VALIDATION_ERROR,
                           f"Invalid status. Must be one of: {', '.join(LISTABLE_STATUSES)}")
    limit, offset = clamp_pagination(data)

    # Status is filtered in memory so only the invitedAt ordering needs an index.
    fetch_limit = min(200, limit + offset + 50) if status else limit + offset
    docs = store.query(invitations_collection(org_id), order_by='invitedAt', descending=True, limit=fetch_limit)

    now = utcnow()
    invitations = [_invitation_to_response(doc.id, doc.data, now) for doc in docs]
    if status:
        invitations = [inv for inv in invitations if inv['status'] == status]

    total = len(invitations)
    return {
        'invitations': invitations[offset:offset + limit],
        'totalCount': total,
        'hasMore': offset + limit < total,
    }
