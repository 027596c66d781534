"""
Outbox records: the durable delivery obligation created alongside every domain
event, and the reference processor that drains them.

Lifecycle of a record:

    pending --claim--> processing --deliver ok--> done
                           |
                           +--deliver failed--> pending (backoff) or dead

`processing` is an exclusive lock. It is only ever acquired through a
conditional transaction in claim_outbox_record, and only the lock owner may
resolve the record afterwards. A lock older than OUTBOX_LOCK_LEASE_MINUTES
counts as a failed attempt and the record can be claimed again.
"""
import logging
import uuid
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, Optional, Tuple

from common import config
from common.database import DocumentStore, doc_path
from constants import COLLECTION_DOMAIN_EVENTS, COLLECTION_OUTBOX
from notifications import route_event_notifications
from utils import utcnow

logger = logging.getLogger(__name__)

JOB_TYPE_NOTIFICATION_DISPATCH = "notification_dispatch"
MAX_ATTEMPTS = 5
BACKOFF_MINUTES = (1, 5, 15, 60)


class InvalidOutboxTransition(Exception):
    def __init__(self, current: "OutboxStatus", target: "OutboxStatus"):
        super().__init__(f"Invalid outbox transition: {current.value} -> {target.value}")
        self.current = current
        self.target = target


class OutboxStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    DONE = "done"
    DEAD = "dead"

    def transition_to(self, target: "OutboxStatus") -> "OutboxStatus":
        if target not in _ALLOWED_TRANSITIONS[self]:
            raise InvalidOutboxTransition(self, target)
        return target


_ALLOWED_TRANSITIONS = {
    OutboxStatus.PENDING: frozenset({OutboxStatus.PROCESSING}),
    OutboxStatus.PROCESSING: frozenset({OutboxStatus.DONE, OutboxStatus.PENDING, OutboxStatus.DEAD}),
    OutboxStatus.DONE: frozenset(),
    OutboxStatus.DEAD: frozenset(),
}


def get_backoff(attempts: int) -> timedelta:
    """Delay before the next attempt after `attempts` failures (1-based)."""
    if attempts < 1:
        raise ValueError(f"attempts must be >= 1, got {attempts}")
    return timedelta(minutes=BACKOFF_MINUTES[min(attempts - 1, len(BACKOFF_MINUTES) - 1)])


def outbox_id_for(org_id: str, event_id: str) -> str:
    return f"notif:{org_id}:{event_id}"


def outbox_path(outbox_id: str) -> str:
    return doc_path(COLLECTION_OUTBOX, outbox_id)


def build_outbox_record(org_id: str, event_id: str, now: datetime) -> Dict[str, Any]:
    return {
        "id": outbox_id_for(org_id, event_id),
        "orgId": org_id,
        "eventId": event_id,
        "jobType": JOB_TYPE_NOTIFICATION_DISPATCH,
        "status": OutboxStatus.PENDING.value,
        "attempts": 0,
        "maxAttempts": MAX_ATTEMPTS,
        "nextAttemptAt": now,
        "createdAt": now,
        "updatedAt": now,
    }


def create_outbox_for_event(store: DocumentStore, org_id: str, event_id: str, now: Optional[datetime] = None) -> bool:
    """Create the pending record for an event. Idempotent: returns False when it already exists."""
    record = build_outbox_record(org_id, event_id, now or utcnow())
    created = store.create(outbox_path(record["id"]), record)
    if not created:
        logger.info(f"Outbox record {record['id']} already exists, skipping")
    return created


class OutboxDeliveryError(Exception):
    """A delivery failure with a specific error code for the record's lastError."""

    def __init__(self, code: str, message: str):
        super().__init__(message)
        self.code = code


def lock_lease() -> timedelta:
    return timedelta(minutes=config.OUTBOX_LOCK_LEASE_MINUTES)


def lock_expired(record: Dict[str, Any], now: datetime) -> bool:
    locked_at = record.get("lockedAt")
    return locked_at is None or locked_at <= now - lock_lease()


def _failure_changes(record: Dict[str, Any], error_code: str, error_message: str,
                     now: datetime) -> Tuple[OutboxStatus, Dict[str, Any]]:
    attempts = record.get("attempts", 0) + 1
    max_attempts = record.get("maxAttempts") or MAX_ATTEMPTS
    changes = {
        "attempts": attempts,
        "updatedAt": now,
        "lockOwner": None,
        "lockedAt": None,
        "lastError": {"code": error_code, "message": error_message[:500], "at": now},
    }
    if attempts >= max_attempts:
        status = OutboxStatus.PROCESSING.transition_to(OutboxStatus.DEAD)
    else:
        status = OutboxStatus.PROCESSING.transition_to(OutboxStatus.PENDING)
        changes["nextAttemptAt"] = now + get_backoff(attempts)
    changes["status"] = status.value
    return status, changes


def claim_outbox_record(store: DocumentStore, outbox_id: str, owner: str, now: Optional[datetime] = None) -> Optional[Dict[str, Any]]:
    """Move a due pending record to processing under `owner`. None when it is not claimable.

    A processing record whose lock is older than the lease was abandoned by a
    run that died mid-delivery. That attempt is recorded as a LOCK_EXPIRED
    failure; if it was the last allowed attempt the record goes dead and None
    is returned, otherwise `owner` takes the record over in the same transaction.
    """
    now = now or utcnow()
    path = outbox_path(outbox_id)

    def _claim(transaction):
        record = transaction.get(path)
        if record is None:
            return None

        updates: Dict[str, Any] = {}
        if record.get("status") == OutboxStatus.PROCESSING.value and lock_expired(record, now):
            previous_owner = record.get("lockOwner")
            status, updates = _failure_changes(
                record, "LOCK_EXPIRED", f"Lock held by {previous_owner} expired", now,
            )
            if status == OutboxStatus.DEAD:
                transaction.update(path, updates)
                logger.error(f"Outbox record {outbox_id} is dead after its lock held by {previous_owner} expired")
                return None
            logger.warning(f"Taking over outbox record {outbox_id} from expired lock of {previous_owner}")
            updates.pop("nextAttemptAt")
            record = {**record, **updates}
        elif record.get("status") != OutboxStatus.PENDING.value:
            return None
        else:
            next_attempt_at = record.get("nextAttemptAt")
            if next_attempt_at is not None and next_attempt_at > now:
                return None

        status = OutboxStatus(record["status"]).transition_to(OutboxStatus.PROCESSING)
        updates.update({"status": status.value, "lockOwner": owner, "lockedAt": now, "updatedAt": now})
        transaction.update(path, updates)
        return {**record, **updates}

    return store.run_transaction(_claim)


def _owned_processing_record(transaction, path: str, owner: str) -> Optional[Dict[str, Any]]:
    record = transaction.get(path)
    if record is None:
        return None
    if record.get("status") != OutboxStatus.PROCESSING.value or record.get("lockOwner") != owner:
        logger.warning(f"Outbox record {path} is not held by {owner}, leaving it untouched")
        return None
    return record


def complete_outbox_record(store: DocumentStore, outbox_id: str, owner: str, now: Optional[datetime] = None) -> bool:
    now = now or utcnow()
    path = outbox_path(outbox_id)

    def _complete(transaction):
        record = _owned_processing_record(transaction, path, owner)
        if record is None:
            return False
        status = OutboxStatus.PROCESSING.transition_to(OutboxStatus.DONE)
        transaction.update(path, {
            "status": status.value,
            "doneAt": now,
            "updatedAt": now,
            "lockOwner": None,
            "lockedAt": None,
        })
        return True

    return store.run_transaction(_complete)


def fail_outbox_record(
    store: DocumentStore,
    outbox_id: str,
    owner: str,
    error_code: str,
    error_message: str,
    now: Optional[datetime] = None,
) -> Optional[OutboxStatus]:
    """Record a failed attempt. Returns the resulting status (pending or dead)."""
    now = now or utcnow()
    path = outbox_path(outbox_id)

    def _fail(transaction):
        record = _owned_processing_record(transaction, path, owner)
        if record is None:
            return None
        status, changes = _failure_changes(record, error_code, error_message, now)
        transaction.update(path, changes)
        return status

    return store.run_transaction(_fail)


def new_processor_id() -> str:
    return f"{config.OUTBOX_PROCESSOR_ID_PREFIX}-{uuid.uuid4().hex[:12]}"


def _deliver_record(store: DocumentStore, record: Dict[str, Any], deliver) -> None:
    event = store.get(doc_path(COLLECTION_DOMAIN_EVENTS, record["eventId"]))
    if event is None:
        raise OutboxDeliveryError("EVENT_NOT_FOUND", f"Domain event {record['eventId']} not found")
    deliver(store, event)


def _due_records(store: DocumentStore, now: datetime, limit: int):
    pending = store.query(
        COLLECTION_OUTBOX,
        filters=[("status", "==", OutboxStatus.PENDING.value), ("nextAttemptAt", "<=", now)],
        order_by="nextAttemptAt",
        limit=limit,
    )
    abandoned = store.query(
        COLLECTION_OUTBOX,
        filters=[("status", "==", OutboxStatus.PROCESSING.value), ("lockedAt", "<=", now - lock_lease())],
        order_by="lockedAt",
        limit=limit,
    )
    return (pending + abandoned)[:limit]


def process_due_outbox(
    store: DocumentStore,
    deliver: Optional[Callable[[DocumentStore, Dict[str, Any]], Any]] = None,
    now: Optional[datetime] = None,
    limit: Optional[int] = None,
    owner: Optional[str] = None,
) -> Dict[str, int]:
    """Drain due pending records, and records whose lock expired, once.

    A failure on one record never aborts the run. Once claimed, every failure
    goes through fail_outbox_record; if even that cannot be written the record
    stays locked and is picked up again after the lock lease. Returns counters
    for the run.
    """
    deliver = deliver or route_event_notifications
    now = now or utcnow()
    owner = owner or new_processor_id()
    stats = {"claimed": 0, "done": 0, "retried": 0, "dead": 0, "skipped": 0, "errors": 0}

    for doc in _due_records(store, now, limit or config.OUTBOX_BATCH_LIMIT):
        if doc.data.get("jobType") != JOB_TYPE_NOTIFICATION_DISPATCH:
            logger.warning(f"Skipping outbox record {doc.id} with unknown job type {doc.data.get('jobType')}")
            stats["skipped"] += 1
            continue

        try:
            record = claim_outbox_record(store, doc.id, owner, now)
        except Exception as e:
            logger.error(f"Could not claim outbox record {doc.id}: {e}", exc_info=True)
            stats["errors"] += 1
            continue
        if record is None:
            stats["skipped"] += 1
            continue
        stats["claimed"] += 1

        try:
            _deliver_record(store, record, deliver)
            completed = complete_outbox_record(store, doc.id, owner, now)
        except Exception as e:
            logger.error(f"Delivery failed for outbox record {doc.id}: {e}", exc_info=True)
            error_code = e.code if isinstance(e, OutboxDeliveryError) else "DELIVERY_FAILED"
            error_message = str(e) or type(e).__name__
        else:
            if completed:
                stats["done"] += 1
            else:
                stats["errors"] += 1
            continue

        try:
            status = fail_outbox_record(store, doc.id, owner, error_code, error_message, now)
        except Exception as e:
            logger.error(f"Could not record failure for outbox record {doc.id}: {e}", exc_info=True)
            stats["errors"] += 1
            continue
        if status == OutboxStatus.DEAD:
            logger.error(f"Outbox record {doc.id} is dead after {record.get('attempts', 0) + 1} attempts")
            stats["dead"] += 1
        elif status == OutboxStatus.PENDING:
            stats["retried"] += 1
        else:
            stats["errors"] += 1

    logger.info(f"Outbox run {owner}: {stats}")
    return stats
