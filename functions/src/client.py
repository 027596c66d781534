import logging
import re
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, field_validator

from audit import record_audit_event
from auth import AuthContext
from common.database import DocumentStore, doc_path
from constants import COLLECTION_CASES, COLLECTION_CLIENTS, COLLECTION_ORGANIZATIONS
from domain_events import emit_domain_event_with_outbox, user_actor
from entitlements import DenyReason, require_entitlement
from errors import ErrorCode, HandlerError
from response import callable_handler
from utils import clamp_pagination, require_id, require_org_id, to_iso, utcnow

logger = logging.getLogger(__name__)

EMAIL_PATTERN = re.compile(r'^[^\s@]+@[^\s@]+\.[^\s@]+$')
FEATURE_CLIENTS = 'CLIENTS'
PLAN_LIMIT_MESSAGE = 'CLIENTS feature not available in current plan'
NOT_MEMBER_MESSAGE = 'User is not a member of this organization'


def _deny_messages(verb: str) -> Dict[DenyReason, str]:
    return {
        DenyReason.ORG_MEMBER: NOT_MEMBER_MESSAGE,
        DenyReason.ROLE_BLOCKED: f'User role does not have permission to {verb} clients',
        DenyReason.PLAN_LIMIT: PLAN_LIMIT_MESSAGE,
    }


def _optional_text(v: Any, max_len: int, message: str, pattern: Optional[re.Pattern] = None) -> Optional[str]:
    if v is None:
        return None
    if not isinstance(v, str):
        raise ValueError(message)
    trimmed = v.strip()
    if not trimmed:
        return None
    if len(trimmed) > max_len or (pattern is not None and not pattern.match(trimmed)):
        raise ValueError(message)
    return trimmed


class ClientFields(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    notes: Optional[str] = None

    @field_validator('name', mode='before')
    @classmethod
    def validate_name(cls, v: Any) -> str:
        name = v.strip() if isinstance(v, str) else ""
        if not name or len(name) > 200:
            raise ValueError('Client name must be 1-200 characters')
        return name

    @field_validator('email', mode='before')
    @classmethod
    def validate_email(cls, v: Any) -> Optional[str]:
        return _optional_text(v, 255, 'Invalid email format', EMAIL_PATTERN)

    @field_validator('phone', mode='before')
    @classmethod
    def validate_phone(cls, v: Any) -> Optional[str]:
        return _optional_text(v, 50, 'Phone must be 50 characters or less')

    @field_validator('notes', mode='before')
    @classmethod
    def validate_notes(cls, v: Any) -> Optional[str]:
        return _optional_text(v, 1000, 'Notes must be 1000 characters or less')


class CreateClientRequest(ClientFields):
    name: str = Field(default=None, validate_default=True)


def client_path(org_id: str, client_id: str) -> str:
    return doc_path(COLLECTION_ORGANIZATIONS, org_id, COLLECTION_CLIENTS, client_id)


def _client_to_response(client: Dict[str, Any]) -> Dict[str, Any]:
    return {
        'clientId': client.get('id'),
        'orgId': client.get('orgId'),
        'name': client.get('name'),
        'email': client.get('email') or None,
        'phone': client.get('phone') or None,
        'notes': client.get('notes') or None,
        'createdAt': to_iso(client.get('createdAt')),
        'updatedAt': to_iso(client.get('updatedAt')),
        'createdBy': client.get('createdBy'),
        'updatedBy': client.get('updatedBy'),
    }


def _load_live_client(store: DocumentStore, org_id: str, client_id: str) -> Dict[str, Any]:
    client = store.get(client_path(org_id, client_id))
    if client is None or client.get('deletedAt'):
        raise HandlerError(ErrorCode.NOT_FOUND, 'Client not found')
    if client.get('orgId') != org_id:
        raise HandlerError(ErrorCode.NOT_AUTHORIZED, 'Client does not belong to this organization')
    return client


@callable_handler("clientCreate")
def create_client(store: DocumentStore, caller: AuthContext, data: Dict[str, Any]) -> Dict[str, Any]:
    org_id = require_org_id(data)
    req = CreateClientRequest.model_validate(data)
    require_entitlement(store, caller.uid, org_id, FEATURE_CLIENTS, 'client.create', _deny_messages('create'))

    collection = doc_path(COLLECTION_ORGANIZATIONS, org_id, COLLECTION_CLIENTS)
    client_id = store.new_id(collection)
    now = utcnow()
    client = {
        'id': client_id,
        'orgId': org_id,
        'name': req.name,
        'email': req.email,
        'phone': req.phone,
        'notes': req.notes,
        'createdAt': now,
        'updatedAt': now,
        'createdBy': caller.uid,
        'updatedBy': caller.uid,
        'deletedAt': None,
    }
    store.set(client_path(org_id, client_id), client)
    logger.info(f"Client {client_id} created in org {org_id} by {caller.uid}")

    record_audit_event(store, org_id, caller.uid, 'client.created', 'client', client_id,
                       metadata={'name': req.name, 'email': req.email})
    emit_domain_event_with_outbox(
        store, org_id, 'client.created', 'client', client_id, user_actor(caller.uid),
        payload={'title': req.name, 'email': req.email},
    )
    return _client_to_response(client)


@callable_handler("clientGet")
def get_client(store: DocumentStore, caller: AuthContext, data: Dict[str, Any]) -> Dict[str, Any]:
    org_id = require_org_id(data)
    client_id = require_id(data, 'clientId', 'Client ID')
    require_entitlement(store, caller.uid, org_id, FEATURE_CLIENTS,
                        messages={DenyReason.ORG_MEMBER: NOT_MEMBER_MESSAGE, DenyReason.PLAN_LIMIT: PLAN_LIMIT_MESSAGE})

    client = _load_live_client(store, org_id, client_id)
    response = _client_to_response(client)
    response['deletedAt'] = None
    return response


@callable_handler("clientList")
def list_clients(store: DocumentStore, caller: AuthContext, data: Dict[str, Any]) -> Dict[str, Any]:
    """List live clients newest-first, with optional case-insensitive name search and offset paging."""
    org_id = require_org_id(data)
    limit, offset = clamp_pagination(data)
    require_entitlement(store, caller.uid, org_id, FEATURE_CLIENTS,
                        messages={DenyReason.ORG_MEMBER: NOT_MEMBER_MESSAGE, DenyReason.PLAN_LIMIT: PLAN_LIMIT_MESSAGE})

    docs = store.query(
        doc_path(COLLECTION_ORGANIZATIONS, org_id, COLLECTION_CLIENTS),
        filters=[('deletedAt', '==', None)],
        order_by='updatedAt',
        descending=True,
        limit=1000,
    )
    clients = [_client_to_response(doc.data) for doc in docs]

    search = data.get('search')
    if isinstance(search, str) and search.strip():
        term = search.strip().lower()
        clients = [c for c in clients if term in (c['name'] or '').lower()]

    total = len(clients)
    return {
        'clients': clients[offset:offset + limit],
        'total': total,
        'hasMore': offset + limit < total,
    }


@callable_handler("clientUpdate")
def update_client(store: DocumentStore, caller: AuthContext, data: Dict[str, Any]) -> Dict[str, Any]:
    org_id = require_org_id(data)
    client_id = require_id(data, 'clientId', 'Client ID')
    require_entitlement(store, caller.uid, org_id, FEATURE_CLIENTS, 'client.update', _deny_messages('update'))

    existing = _load_live_client(store, org_id, client_id)
    fields = {k: v for k, v in data.items() if k in ClientFields.model_fields}
    req = ClientFields.model_validate(fields)
    provided = sorted(req.model_fields_set)
    if not provided:
        return _client_to_response(existing)

    changes = {name: getattr(req, name) for name in provided}
    changes['updatedAt'] = utcnow()
    changes['updatedBy'] = caller.uid
    store.update(client_path(org_id, client_id), changes)

    record_audit_event(store, org_id, caller.uid, 'client.updated', 'client', client_id,
                       metadata={'updatedFields': provided})
    return _client_to_response({**existing, **changes})


@callable_handler("clientDelete")
def delete_client(store: DocumentStore, caller: AuthContext, data: Dict[str, Any]) -> Dict[str, Any]:
    """Soft-delete a client. Refused while any live case still references it."""
    org_id = require_org_id(data)
    client_id = require_id(data, 'clientId', 'Client ID')
    require_entitlement(store, caller.uid, org_id, FEATURE_CLIENTS, 'client.delete', _deny_messages('delete'))

    client = _load_live_client(store, org_id, client_id)

    linked_cases = store.query(
        doc_path(COLLECTION_ORGANIZATIONS, org_id, COLLECTION_CASES),
        filters=[('clientId', '==', client_id), ('deletedAt', '==', None)],
        limit=1,
    )
    if linked_cases:
        raise HandlerError(
            ErrorCode.CONFLICT,
            'Cannot delete client with associated cases. Please remove client from all cases first.',
        )

    now = utcnow()
    store.update(client_path(org_id, client_id), {'deletedAt': now, 'updatedAt': now, 'updatedBy': caller.uid})
    record_audit_event(store, org_id, caller.uid, 'client.deleted', 'client', client_id,
                       metadata={'name': client.get('name')})
    return {'clientId': client_id, 'message': 'Client deleted successfully'}
