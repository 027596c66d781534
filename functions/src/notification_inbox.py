"""
Read side of in-app notifications: listing, read state, unread count and
per-category preferences for the calling member.
"""
import logging
from typing import Any, Dict, List

from pydantic import BaseModel, Field, field_validator

from auth import AuthContext
from common.database import DocumentStore, doc_path
from constants import COLLECTION_NOTIFICATIONS
from entitlements import DenyReason, require_entitlement
from errors import ErrorCode, HandlerError
from notifications import NOTIFICATION_CATEGORIES, get_all_preferences, preference_path
from response import callable_handler
from utils import clamp_pagination, require_id, require_org_id, to_iso, utcnow

logger = logging.getLogger(__name__)

FEATURE_NOTIFICATIONS = 'NOTIFICATIONS'
CHANNEL_IN_APP = 'in_app'
READ_STATUSES = ('all', 'read', 'unread')
# Firestore `in` filters take at most 10 values.
MAX_CATEGORY_FILTER = 10
# Firestore caps a batch at 500 writes.
MARK_ALL_BATCH_SIZE = 500

DENY_MESSAGES = {
    DenyReason.ORG_MEMBER: 'Not a member of this organization',
    DenyReason.PLAN_LIMIT: 'NOTIFICATIONS feature not available in current plan',
}


class PreferenceUpdateRequest(BaseModel):
    category: Any = Field(default=None, validate_default=True)
    inApp: Any = Field(default=None, validate_default=True)

    @field_validator('category', mode='before')
    @classmethod
    def validate_category(cls, v: Any) -> str:
        if not isinstance(v, str) or v not in NOTIFICATION_CATEGORIES:
            raise ValueError('Valid category is required')
        return v

    @field_validator('inApp', mode='before')
    @classmethod
    def validate_in_app(cls, v: Any) -> bool:
        if not isinstance(v, bool):
            raise ValueError('inApp must be true or false')
        return v


def _require_notifications(store: DocumentStore, caller: AuthContext, org_id: str) -> None:
    require_entitlement(store, caller.uid, org_id, FEATURE_NOTIFICATIONS, messages=DENY_MESSAGES)


def _mine(caller: AuthContext, org_id: str) -> List:
    return [('recipientUid', '==', caller.uid), ('orgId', '==', org_id), ('channel', '==', CHANNEL_IN_APP)]


def _unread(store: DocumentStore, caller: AuthContext, org_id: str):
    return store.query(COLLECTION_NOTIFICATIONS, filters=_mine(caller, org_id) + [('readAt', '==', None)])


def _category_filter(data: Dict[str, Any]):
    categories = data.get('categories')
    if isinstance(categories, list):
        valid = [c for c in categories if isinstance(c, str) and c in NOTIFICATION_CATEGORIES]
        if valid:
            return ('category', 'in', valid[:MAX_CATEGORY_FILTER])
    category = data.get('category')
    if isinstance(category, str) and category in NOTIFICATION_CATEGORIES:
        return ('category', '==', category)
    return None


def _notification_to_response(notification_id: str, notification: Dict[str, Any]) -> Dict[str, Any]:
    return {
        'id': notification_id,
        'orgId': notification.get('orgId'),
        'eventId': notification.get('eventId'),
        'channel': notification.get('channel'),
        'category': notification.get('category'),
        'title': notification.get('title'),
        'bodyPreview': notification.get('bodyPreview'),
        'readAt': to_iso(notification.get('readAt')),
        'status': notification.get('status'),
        'createdAt': to_iso(notification.get('createdAt')),
    }


@callable_handler("notificationList")
def list_notifications(store: DocumentStore, caller: AuthContext, data: Dict[str, Any]) -> Dict[str, Any]:
    """
    List the caller's in-app notifications in one organization, newest first.

    Optional filters: `category` or `categories` (unknown values are ignored)
    and `readStatus` (all, read, unread). Read notifications are ordered by
    when they were read.
    """
    org_id = require_org_id(data)
    _require_notifications(store, caller, org_id)
    limit, _ = clamp_pagination(data)

    filters = _mine(caller, org_id)
    category_filter = _category_filter(data)
    if category_filter:
        filters.append(category_filter)

    read_status = data.get('readStatus') if data.get('readStatus') in READ_STATUSES else 'all'
    order_by = 'createdAt'
    if read_status == 'read':
        filters.append(('readAt', '!=', None))
        order_by = 'readAt'
    elif read_status == 'unread':
        filters.append(('readAt', '==', None))

    docs = store.query(COLLECTION_NOTIFICATIONS, filters=filters, order_by=order_by, descending=True, limit=limit)
    return {'notifications': [_notification_to_response(doc.id, doc.data) for doc in docs]}


@callable_handler("notificationMarkRead")
def mark_notification_read(store: DocumentStore, caller: AuthContext, data: Dict[str, Any]) -> Dict[str, Any]:
    org_id = require_org_id(data)
    notification_id = require_id(data, 'notificationId', 'Notification ID')
    _require_notifications(store, caller, org_id)

    path = doc_path(COLLECTION_NOTIFICATIONS, notification_id)
    notification = store.get(path)
    if notification is None:
        raise HandlerError(ErrorCode.NOT_FOUND, 'Notification not found')
    if notification.get('recipientUid') != caller.uid or notification.get('orgId') != org_id:
        raise HandlerError(ErrorCode.NOT_AUTHORIZED, 'Not authorized to update this notification')

    # Keep the first read time when marked again.
    if notification.get('readAt') is None:
        now = utcnow()
        store.update(path, {'readAt': now, 'updatedAt': now})
    return {'ok': True}


@callable_handler("notificationMarkAllRead")
def mark_all_notifications_read(store: DocumentStore, caller: AuthContext, data: Dict[str, Any]) -> Dict[str, Any]:
    org_id = require_org_id(data)
    _require_notifications(store, caller, org_id)

    unread = _unread(store, caller, org_id)
    now = utcnow()
    for start in range(0, len(unread), MARK_ALL_BATCH_SIZE):
        batch = store.batch()
        for doc in unread[start:start + MARK_ALL_BATCH_SIZE]:
            batch.update(doc.path, {'readAt': now, 'updatedAt': now})
        batch.commit()

    logger.info(f"Marked {len(unread)} notifications read for {caller.uid} in org {org_id}")
    return {'marked': len(unread)}


@callable_handler("notificationUnreadCount")
def unread_notification_count(store: DocumentStore, caller: AuthContext, data: Dict[str, Any]) -> Dict[str, Any]:
    org_id = require_org_id(data)
    _require_notifications(store, caller, org_id)
    return {'count': len(_unread(store, caller, org_id))}


@callable_handler("notificationPreferencesGet")
def get_notification_preferences(store: DocumentStore, caller: AuthContext, data: Dict[str, Any]) -> Dict[str, Any]:
    org_id = require_org_id(data)
    _require_notifications(store, caller, org_id)
    return {'preferences': get_all_preferences(store, org_id, caller.uid)}


@callable_handler("notificationPreferencesUpdate")
def update_notification_preferences(store: DocumentStore, caller: AuthContext, data: Dict[str, Any]) -> Dict[str, Any]:
    """Set the in-app toggle for one category. Returns every category's effective preferences."""
    org_id = require_org_id(data)
    req = PreferenceUpdateRequest.model_validate(data)
    _require_notifications(store, caller, org_id)

    store.set(preference_path(org_id, caller.uid, req.category), {
        'orgId': org_id,
        'uid': caller.uid,
        'category': req.category,
        'inApp': req.inApp,
        'updatedAt': utcnow(),
    })
    return {'preferences': get_all_preferences(store, org_id, caller.uid)}
