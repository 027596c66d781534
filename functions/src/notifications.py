"""
In-app notification routing for domain events.

Recipients are collected from the event (payload people, the case creator and
participants, org admins for activity events), then narrowed by the event's
visibility, by case access and by the recipient's in-app preference for the
event's category. Notification ids are `{eventId}:{uid}` and are
created only if absent, so redelivering an event never duplicates them.
"""
import logging
from typing import Any, Dict, List, Optional, Set

from case_access import can_user_access_case, case_path
from common.database import DocumentStore, doc_path
from constants import (
    ADMIN_ROLES,
    COLLECTION_CLIENTS,
    COLLECTION_MEMBERS,
    COLLECTION_NOTIFICATION_PREFERENCES,
    COLLECTION_NOTIFICATIONS,
    COLLECTION_ORGANIZATIONS,
    COLLECTION_PARTICIPANTS,
)
from utils import utcnow

logger = logging.getLogger(__name__)

ROUTED_EVENT_TYPES = frozenset({
    "user.invited", "user.joined",
    "matter.created", "matter.updated",
    "task.created", "task.updated", "task.assigned", "task.completed",
    "document.uploaded",
    "invoice.created", "invoice.sent", "payment.received",
    "client.created",
    "comment.added", "comment.updated", "comment.deleted",
})

# Activity events also notify org admins so small firms always see something.
ORG_ACTIVITY_EVENT_TYPES = ROUTED_EVENT_TYPES - {"user.invited", "user.joined", "task.assigned"}

_CATEGORY_PREFIXES = (
    ("matter.", "matter"),
    ("task.", "task"),
    ("document.", "document"),
    ("invoice.", "invoice"),
    ("payment.", "invoice"),
    ("comment.", "comment"),
    ("user.", "user"),
    ("client.", "client"),
)


NOTIFICATION_CATEGORIES = ("matter", "task", "document", "invoice", "payment", "comment", "user", "client")
DEFAULT_IN_APP = True


def event_type_to_category(event_type: str) -> str:
    for prefix, category in _CATEGORY_PREFIXES:
        if event_type.startswith(prefix):
            return category
    return "matter"


def notification_id_for(event_id: str, uid: str) -> str:
    return f"{event_id}:{uid}"


def preference_path(org_id: str, uid: str, category: str) -> str:
    return doc_path(COLLECTION_NOTIFICATION_PREFERENCES, f"{org_id}_{uid}_{category}")


def get_effective_preferences(store: DocumentStore, org_id: str, uid: str, category: str) -> Dict[str, bool]:
    """Stored toggles for one category, defaults for anything not set."""
    stored = store.get(preference_path(org_id, uid, category)) or {}
    in_app = stored.get("inApp")
    return {"inApp": in_app if isinstance(in_app, bool) else DEFAULT_IN_APP}


def get_all_preferences(store: DocumentStore, org_id: str, uid: str) -> Dict[str, Dict[str, bool]]:
    return {category: get_effective_preferences(store, org_id, uid, category) for category in NOTIFICATION_CATEGORIES}


def _matter_id(event: Dict[str, Any]) -> Optional[str]:
    payload = event.get("payload") or {}
    matter_id = event.get("matterId") or payload.get("caseId") or payload.get("matterId")
    return matter_id if isinstance(matter_id, str) and matter_id else None


def _members(store: DocumentStore, org_id: str) -> Dict[str, Dict[str, Any]]:
    docs = store.query(doc_path(COLLECTION_ORGANIZATIONS, org_id, COLLECTION_MEMBERS))
    return {doc.id: doc.data for doc in docs}


def _candidate_recipients(store: DocumentStore, event: Dict[str, Any], members: Dict[str, Dict[str, Any]]) -> Set[str]:
    org_id = event["orgId"]
    payload = event.get("payload") or {}
    actor_id = (event.get("actor") or {}).get("actorId")
    uids: Set[str] = set()

    def add(uid):
        if isinstance(uid, str) and uid and uid != actor_id:
            uids.add(uid)

    for key in ("assigneeId", "createdBy", "uploadedBy"):
        add(payload.get(key))

    matter_id = _matter_id(event)
    if matter_id:
        path = case_path(org_id, matter_id)
        case_data = store.get(path)
        if case_data:
            add(case_data.get("createdBy"))
        for participant in store.query(doc_path(path, COLLECTION_PARTICIPANTS)):
            add(participant.id)

    event_type = event.get("eventType")
    if event_type == "user.joined" or event_type in ORG_ACTIVITY_EVENT_TYPES:
        for uid, member in members.items():
            if member.get("role") in ADMIN_ROLES:
                add(uid)
    return uids


def _allowed_by_visibility(event: Dict[str, Any], role: Optional[str]) -> bool:
    visibility = event.get("visibility") or {"audience": "internal"}
    if visibility.get("audience") == "client":
        return False
    roles_allowed = visibility.get("rolesAllowed")
    if roles_allowed:
        return role in roles_allowed
    return True


def build_title_and_body(event_type: str, payload: Dict[str, Any], matter_title: Optional[str] = None,
                         client_name: Optional[str] = None) -> Dict[str, str]:
    title = payload.get("title") or "Item"
    matter = f' in "{matter_title}"' if matter_title else ""
    client = f" for {client_name}" if client_name else ""

    templates = {
        "matter.created": (f"New matter: {title}", f'Someone created "{title}"{client}.'),
        "matter.updated": (f"Matter updated: {matter_title or title}", f'Someone updated "{matter_title or title}".'),
        "task.created": (f"New task: {title}", f'Someone created task "{title}"{matter}.'),
        "task.updated": (f"Task updated: {title}", f'Someone updated task "{title}"{matter}.'),
        "task.assigned": (f"Task assigned to you: {title}", f'Someone assigned you to "{title}"{matter}.'),
        "task.completed": (f"Task completed: {title}", f'Someone completed "{title}"{matter}.'),
        "document.uploaded": (f"New document: {title}", f'Someone uploaded "{title}"{matter}.'),
        "invoice.created": ("New invoice", f"Someone created an invoice{matter}{client}."),
        "invoice.sent": ("Invoice sent", f"Someone sent an invoice{matter}{client}."),
        "payment.received": ("Payment received", f"Someone recorded a payment{matter}{client}."),
        "user.invited": ("Invitation sent", f"{payload.get('email', 'A new member')} was invited to your firm."),
        "user.joined": ("New team member", "A new member joined your firm."),
        "client.created": (f"New client: {title}", f'Someone added client "{title}".'),
        "comment.added": ("New comment", f"Someone added a comment{matter}."),
        "comment.updated": ("Comment updated", f"Someone updated a comment{matter}."),
        "comment.deleted": ("Comment deleted", f"Someone deleted a comment{matter}."),
    }
    notification_title, body = templates.get(event_type, ("Update", f'Someone made an update for "{title}".'))
    return {"title": notification_title, "bodyPreview": body}


def _matter_context(store: DocumentStore, org_id: str, matter_id: Optional[str]):
    if not matter_id:
        return None, None
    case_data = store.get(case_path(org_id, matter_id)) or {}
    client_name = None
    if case_data.get("clientId"):
        client = store.get(doc_path(COLLECTION_ORGANIZATIONS, org_id, COLLECTION_CLIENTS, case_data["clientId"])) or {}
        client_name = client.get("name")
    return case_data.get("title"), client_name


def route_event_notifications(store: DocumentStore, event: Dict[str, Any]) -> List[str]:
    """Create in-app notifications for an event. Returns the recipient uids notified.

    Raises on storage errors so the outbox processor can retry the delivery.
    """
    event_type = event.get("eventType")
    if not event.get("eventId") or not event.get("orgId") or event_type not in ROUTED_EVENT_TYPES:
        logger.info(f"Event {event.get('eventId')} ({event_type}) is not routed")
        return []

    org_id = event["orgId"]
    members = _members(store, org_id)
    matter_id = _matter_id(event)
    category = event_type_to_category(event_type)

    recipients = []
    for uid in sorted(_candidate_recipients(store, event, members)):
        member = members.get(uid)
        if member is None:
            continue
        if not _allowed_by_visibility(event, member.get("role")):
            continue
        if matter_id and not can_user_access_case(store, org_id, matter_id, uid).allowed:
            continue
        if not get_effective_preferences(store, org_id, uid, category)["inApp"]:
            continue
        recipients.append(uid)

    if not recipients:
        return []

    matter_title, client_name = _matter_context(store, org_id, matter_id)
    content = build_title_and_body(event_type, event.get("payload") or {}, matter_title, client_name)
    now = utcnow()
    for uid in recipients:
        notification_id = notification_id_for(event["eventId"], uid)
        store.create(doc_path(COLLECTION_NOTIFICATIONS, notification_id), {
            "id": notification_id,
            "orgId": org_id,
            "recipientUid": uid,
            "eventId": event["eventId"],
            "channel": "in_app",
            "status": "pending",
            "category": category,
            "title": content["title"],
            "bodyPreview": content["bodyPreview"],
            "readAt": None,
            "createdAt": now,
            "updatedAt": now,
        })

    logger.info(f"Routed event {event['eventId']} ({event_type}) to {len(recipients)} recipients")
    return recipients
