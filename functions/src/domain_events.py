"""
Domain event emission. Every event is written together with its outbox record
in a single batch, so either both exist or neither does.
"""
import json
import logging
import threading
import uuid
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel

from common import config
from common.database import DocumentStore, doc_path
from constants import COLLECTION_DOMAIN_EVENTS
from outbox import build_outbox_record, outbox_path
from utils import to_iso, utcnow

logger = logging.getLogger(__name__)


class DomainEventActor(BaseModel):
    actorType: Literal["user", "system"] = "user"
    actorId: str


class DomainEventVisibility(BaseModel):
    audience: Literal["internal", "client", "both"] = "internal"
    rolesAllowed: Optional[List[str]] = None


DEFAULT_VISIBILITY = DomainEventVisibility()


class PayloadTooLargeError(ValueError):
    def __init__(self, size: int, limit: int):
        super().__init__(f"Event payload is {size} bytes, limit is {limit}")
        self.size = size
        self.limit = limit


def payload_size(payload: Dict[str, Any]) -> int:
    """Size of the payload as UTF-8 JSON. Non-JSON values (datetimes) count as their str()."""
    return len(json.dumps(payload, default=str, separators=(",", ":")).encode("utf-8"))


def check_payload_size(payload: Dict[str, Any]) -> None:
    size = payload_size(payload)
    if size > config.DOMAIN_EVENT_MAX_PAYLOAD_BYTES:
        raise PayloadTooLargeError(size, config.DOMAIN_EVENT_MAX_PAYLOAD_BYTES)


_failure_lock = threading.Lock()
_emission_failures = 0


def emission_failure_count() -> int:
    """Number of emissions that failed in this process since start (or last reset)."""
    return _emission_failures


def reset_emission_failure_count() -> None:
    global _emission_failures
    with _failure_lock:
        _emission_failures = 0


def _record_emission_failure() -> None:
    global _emission_failures
    with _failure_lock:
        _emission_failures += 1


def user_actor(uid: str) -> DomainEventActor:
    return DomainEventActor(actorType="user", actorId=uid)


def build_domain_event(
    event_id: str,
    org_id: str,
    event_type: str,
    entity_type: str,
    entity_id: str,
    actor: DomainEventActor,
    payload: Dict[str, Any],
    now,
    visibility: Optional[DomainEventVisibility] = None,
    matter_id: Optional[str] = None,
) -> Dict[str, Any]:
    event = {
        "eventId": event_id,
        "orgId": org_id,
        "eventType": event_type,
        "entityType": entity_type,
        "entityId": entity_id,
        "actor": actor.model_dump(),
        "timestamp": now,
        "timestampIso": to_iso(now),
        "visibility": (visibility or DEFAULT_VISIBILITY).model_dump(exclude_none=True),
        "payload": payload,
    }
    if matter_id:
        event["matterId"] = matter_id
    return event


def emit_domain_event_with_outbox(
    store: DocumentStore,
    org_id: str,
    event_type: str,
    entity_type: str,
    entity_id: str,
    actor: DomainEventActor,
    payload: Optional[Dict[str, Any]] = None,
    visibility: Optional[DomainEventVisibility] = None,
    matter_id: Optional[str] = None,
) -> Optional[str]:
    """
    Write a domain event and its pending outbox record atomically.

    Never raises: the caller's mutation has already committed, so a failure
    here is logged, counted (see emission_failure_count) and reported as None.
    A payload over DOMAIN_EVENT_MAX_PAYLOAD_BYTES is such a failure; nothing
    is written for it.
    Returns the new event id on success.
    """
    try:
        check_payload_size(payload or {})
        event_id = str(uuid.uuid4())
        now = utcnow()
        event = build_domain_event(
            event_id, org_id, event_type, entity_type, entity_id, actor,
            payload or {}, now, visibility, matter_id,
        )
        outbox_record = build_outbox_record(org_id, event_id, now)

        batch = store.batch()
        batch.create(doc_path(COLLECTION_DOMAIN_EVENTS, event_id), event)
        batch.create(outbox_path(outbox_record["id"]), outbox_record)
        batch.commit()
        logger.info(f"Emitted {event_type} event {event_id} for {entity_type}/{entity_id} in org {org_id}")
        return event_id
    except Exception as e:
        _record_emission_failure()
        logger.error(
            f"Failed to emit {event_type} event for {entity_type}/{entity_id} in org {org_id}: {e}",
            exc_info=True,
        )
        return None
