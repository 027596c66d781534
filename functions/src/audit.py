import logging
from typing import Any, Dict, Optional

from common.database import DocumentStore, doc_path
from constants import COLLECTION_AUDIT_EVENTS, COLLECTION_ORGANIZATIONS
from utils import utcnow

logger = logging.getLogger(__name__)


def record_audit_event(
    store: DocumentStore,
    org_id: str,
    actor_uid: str,
    action: str,
    entity_type: str,
    entity_id: str,
    metadata: Optional[Dict[str, Any]] = None,
    case_id: Optional[str] = None,
) -> Optional[str]:
    """Append an immutable audit record. Best-effort: failures are logged and
    swallowed, and None is returned instead of the record id."""
    try:
        collection = doc_path(COLLECTION_ORGANIZATIONS, org_id, COLLECTION_AUDIT_EVENTS)
        audit_id = store.new_id(collection)
        record = {
            "id": audit_id,
            "orgId": org_id,
            "actorUid": actor_uid,
            "action": action,
            "entityType": entity_type,
            "entityId": entity_id,
            "timestamp": utcnow(),
        }
        if metadata:
            record["metadata"] = metadata
        inferred_case_id = case_id or (metadata or {}).get("caseId")
        if isinstance(inferred_case_id, str) and inferred_case_id:
            record["caseId"] = inferred_case_id
        store.set(doc_path(collection, audit_id), record)
        return audit_id
    except Exception as e:
        logger.error(f"Failed to write audit event {action} for {entity_type}/{entity_id}: {e}", exc_info=True)
        return None
