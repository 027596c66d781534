import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from common.database import DocumentStore, doc_path
from constants import COLLECTION_CASES, COLLECTION_ORGANIZATIONS, COLLECTION_PARTICIPANTS

logger = logging.getLogger(__name__)

VISIBILITY_ORG_WIDE = "ORG_WIDE"
VISIBILITY_PRIVATE = "PRIVATE"


@dataclass
class CaseAccessResult:
    allowed: bool
    reason: Optional[str] = None
    case_data: Optional[Dict[str, Any]] = None


def case_path(org_id: str, case_id: str) -> str:
    return doc_path(COLLECTION_ORGANIZATIONS, org_id, COLLECTION_CASES, case_id)


def can_user_access_case(store: DocumentStore, org_id: str, case_id: str, uid: str) -> CaseAccessResult:
    """
    Single decision point for case visibility.

    ORG_WIDE cases are open to every org member (membership is checked by the
    caller). PRIVATE cases are open to the creator and explicit participants.
    Missing and soft-deleted cases are always denied.
    """
    path = case_path(org_id, case_id)
    case_data = store.get(path)
    if case_data is None or case_data.get("deletedAt"):
        return CaseAccessResult(allowed=False, reason="Case not found")

    if case_data.get("visibility") != VISIBILITY_PRIVATE:
        return CaseAccessResult(allowed=True, case_data=case_data)

    if case_data.get("createdBy") == uid:
        return CaseAccessResult(allowed=True, case_data=case_data)

    if store.get(doc_path(path, COLLECTION_PARTICIPANTS, uid)) is not None:
        return CaseAccessResult(allowed=True, case_data=case_data)

    logger.info(f"User {uid} denied access to private case {case_id} in org {org_id}")
    return CaseAccessResult(
        allowed=False,
        reason="You are not allowed to access this private case",
        case_data=case_data,
    )
