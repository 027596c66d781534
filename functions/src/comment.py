import logging
from typing import Any, Dict, Optional

from auth import AuthContext
from case_access import can_user_access_case
from common.database import DocumentStore, doc_path
from constants import (
    ADMIN_ROLES,
    COLLECTION_COMMENTS,
    COLLECTION_DOCUMENTS,
    COLLECTION_ORGANIZATIONS,
    COLLECTION_TASKS,
)
from domain_events import emit_domain_event_with_outbox, user_actor
from entitlements import DenyReason, require_entitlement
from errors import ErrorCode, HandlerError
from response import callable_handler
from utils import clamp_pagination, parse_non_empty_string, require_org_id, to_iso, utcnow

logger = logging.getLogger(__name__)

MAX_BODY_LENGTH = 5000
EVENT_BODY_PREVIEW = 200
NOT_MEMBER_MESSAGE = 'You are not a member of this organization'


def comments_collection(org_id: str) -> str:
    return doc_path(COLLECTION_ORGANIZATIONS, org_id, COLLECTION_COMMENTS)


def _parse_body(data: Dict[str, Any]) -> str:
    body = parse_non_empty_string(data.get('body'), MAX_BODY_LENGTH)
    if body is None:
        raise HandlerError(ErrorCode.VALIDATION_ERROR, f'Body must be 1-{MAX_BODY_LENGTH} characters')
    return body


def _optional_id(data: Dict[str, Any], field: str) -> Optional[str]:
    return parse_non_empty_string(data.get(field), 120)


def _require_member(store: DocumentStore, caller: AuthContext, org_id: str):
    return require_entitlement(store, caller.uid, org_id, messages={DenyReason.ORG_MEMBER: NOT_MEMBER_MESSAGE})


def _comment_to_response(comment: Dict[str, Any]) -> Dict[str, Any]:
    return {
        'commentId': comment.get('commentId'),
        'orgId': comment.get('orgId'),
        'matterId': comment.get('matterId'),
        'taskId': comment.get('taskId'),
        'documentId': comment.get('documentId'),
        'authorUid': comment.get('authorUid'),
        'body': comment.get('body'),
        'createdAt': to_iso(comment.get('createdAt')),
        'updatedAt': to_iso(comment.get('updatedAt')),
    }


def _event_payload(comment: Dict[str, Any], body: Optional[str] = None) -> Dict[str, Any]:
    payload: Dict[str, Any] = {'matterId': comment['matterId']}
    if body is not None:
        payload['body'] = body[:EVENT_BODY_PREVIEW]
    for field in ('taskId', 'documentId'):
        if comment.get(field):
            payload[field] = comment[field]
    return payload


def _load_editable_comment(store: DocumentStore, caller: AuthContext, org_id: str, comment_id: str, action: str):
    decision = _require_member(store, caller, org_id)
    path = doc_path(comments_collection(org_id), comment_id)
    comment = store.get(path)
    if comment is None:
        raise HandlerError(ErrorCode.NOT_FOUND, 'Comment not found')
    if comment.get('deletedAt'):
        return path, comment
    if not can_user_access_case(store, org_id, comment['matterId'], caller.uid).allowed:
        raise HandlerError(ErrorCode.NOT_FOUND, 'Comment not found')

    if comment.get('authorUid') != caller.uid and decision.role not in ADMIN_ROLES:
        raise HandlerError(ErrorCode.NOT_AUTHORIZED, f'Only the author or an admin can {action} this comment')
    return path, comment


@callable_handler("commentCreate")
def create_comment(store: DocumentStore, caller: AuthContext, data: Dict[str, Any]) -> Dict[str, Any]:
    """Comment on a matter, optionally narrowed to one of its tasks or documents (never both)."""
    org_id = require_org_id(data)
    matter_id = _optional_id(data, 'matterId')
    if matter_id is None:
        raise HandlerError(ErrorCode.VALIDATION_ERROR, 'matterId is required')
    body = _parse_body(data)

    task_id = _optional_id(data, 'taskId')
    document_id = _optional_id(data, 'documentId')
    if task_id and document_id:
        raise HandlerError(ErrorCode.VALIDATION_ERROR, 'Provide either taskId or documentId, not both')

    _require_member(store, caller, org_id)
    if not can_user_access_case(store, org_id, matter_id, caller.uid).allowed:
        raise HandlerError(ErrorCode.NOT_FOUND, 'Case not found or access denied')

    comment_id = store.new_id(comments_collection(org_id))
    now = utcnow()
    comment = {
        'commentId': comment_id,
        'orgId': org_id,
        'matterId': matter_id,
        'authorUid': caller.uid,
        'body': body,
        'createdAt': now,
        'updatedAt': now,
        'deletedAt': None,
    }
    if task_id:
        comment['taskId'] = task_id
    if document_id:
        comment['documentId'] = document_id
    store.set(doc_path(comments_collection(org_id), comment_id), comment)

    emit_domain_event_with_outbox(
        store, org_id, 'comment.added', 'comment', comment_id, user_actor(caller.uid),
        payload=_event_payload(comment, body), matter_id=matter_id,
    )
    return _comment_to_response(comment)


@callable_handler("commentList")
def list_comments(store: DocumentStore, caller: AuthContext, data: Dict[str, Any]) -> Dict[str, Any]:
    """List live comments for exactly one of matterId, taskId or documentId, newest first."""
    org_id = require_org_id(data)
    targets = {field: _optional_id(data, field) for field in ('matterId', 'taskId', 'documentId')}
    provided = {field: value for field, value in targets.items() if value}
    if not provided:
        raise HandlerError(ErrorCode.VALIDATION_ERROR, 'One of matterId, taskId, or documentId is required')
    if len(provided) > 1:
        raise HandlerError(ErrorCode.VALIDATION_ERROR, 'Provide only one of matterId, taskId, or documentId')
    (field, value), = provided.items()

    if field == 'matterId':
        matter_id = value
    else:
        collection = COLLECTION_TASKS if field == 'taskId' else COLLECTION_DOCUMENTS
        label = 'Task' if field == 'taskId' else 'Document'
        parent = store.get(doc_path(COLLECTION_ORGANIZATIONS, org_id, collection, value))
        if parent is None:
            raise HandlerError(ErrorCode.NOT_FOUND, f'{label} not found')
        matter_id = parent.get('caseId')
        if not matter_id:
            raise HandlerError(ErrorCode.VALIDATION_ERROR, f'{label} is not linked to a case')

    require_entitlement(store, caller.uid, org_id, messages={DenyReason.ORG_MEMBER: 'Not authorized'})
    if not can_user_access_case(store, org_id, matter_id, caller.uid).allowed:
        raise HandlerError(ErrorCode.NOT_FOUND, 'Case not found or access denied')

    limit, offset = clamp_pagination(data)
    docs = store.query(
        comments_collection(org_id),
        filters=[(field, '==', value)],
        order_by='createdAt',
        descending=True,
        limit=offset + limit + 30,
    )
    live = [doc.data for doc in docs if not doc.data.get('deletedAt')]
    page = live[offset:offset + limit]
    return {
        'comments': [_comment_to_response(c) for c in page],
        'total': len(page),
        'hasMore': len(live) > offset + limit,
    }


@callable_handler("commentUpdate")
def update_comment(store: DocumentStore, caller: AuthContext, data: Dict[str, Any]) -> Dict[str, Any]:
    org_id = require_org_id(data)
    comment_id = _optional_id(data, 'commentId')
    if comment_id is None:
        raise HandlerError(ErrorCode.VALIDATION_ERROR, 'commentId is required')
    body = _parse_body(data)

    path, comment = _load_editable_comment(store, caller, org_id, comment_id, 'update')
    if comment.get('deletedAt'):
        raise HandlerError(ErrorCode.NOT_FOUND, 'Comment not found')

    now = utcnow()
    store.update(path, {'body': body, 'updatedAt': now})
    emit_domain_event_with_outbox(
        store, org_id, 'comment.updated', 'comment', comment_id, user_actor(caller.uid),
        payload=_event_payload(comment, body), matter_id=comment['matterId'],
    )
    return _comment_to_response({**comment, 'body': body, 'updatedAt': now})


@callable_handler("commentDelete")
def delete_comment(store: DocumentStore, caller: AuthContext, data: Dict[str, Any]) -> Dict[str, Any]:
    """Soft delete. Deleting an already deleted comment succeeds without side effects."""
    org_id = require_org_id(data)
    comment_id = _optional_id(data, 'commentId')
    if comment_id is None:
        raise HandlerError(ErrorCode.VALIDATION_ERROR, 'commentId is required')

    path, comment = _load_editable_comment(store, caller, org_id, comment_id, 'delete')
    if comment.get('deletedAt'):
        return {'deleted': True}

    now = utcnow()
    store.update(path, {'deletedAt': now, 'updatedAt': now})
    emit_domain_event_with_outbox(
        store, org_id, 'comment.deleted', 'comment', comment_id, user_actor(caller.uid),
        payload=_event_payload(comment), matter_id=comment['matterId'],
    )
    return {'deleted': True}
