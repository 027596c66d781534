"""
Plans, roles, permissions and collection names.
"""
from typing import Dict, FrozenSet

# Collection names (schema-in-code). Org-scoped collections live under
# organizations/{orgId}/...; events and outbox are flat so the dispatch
# processor can scan them without walking any one organization's subtree.
COLLECTION_ORGANIZATIONS = "organizations"
COLLECTION_MEMBERS = "members"
COLLECTION_CLIENTS = "clients"
COLLECTION_CASES = "cases"
COLLECTION_PARTICIPANTS = "participants"
COLLECTION_INVITATIONS = "invitations"
COLLECTION_INVOICES = "invoices"
COLLECTION_LINE_ITEMS = "lineItems"
COLLECTION_PAYMENTS = "payments"
COLLECTION_TIME_ENTRIES = "timeEntries"
COLLECTION_TASKS = "tasks"
COLLECTION_DOCUMENTS = "documents"
COLLECTION_COMMENTS = "comments"
COLLECTION_AUDIT_EVENTS = "audit_events"
COLLECTION_DOMAIN_EVENTS = "domain_events"
COLLECTION_OUTBOX = "outbox"
COLLECTION_NOTIFICATIONS = "notifications"
COLLECTION_NOTIFICATION_PREFERENCES = "notification_preferences"

ROLE_OWNER = "OWNER"
ROLE_ADMIN = "ADMIN"
ROLE_LAWYER = "LAWYER"
ROLE_PARALEGAL = "PARALEGAL"
ROLE_VIEWER = "VIEWER"

INVITABLE_ROLES = (ROLE_LAWYER, ROLE_PARALEGAL, ROLE_VIEWER)
ADMIN_ROLES = (ROLE_OWNER, ROLE_ADMIN)

PLAN_FREE = "FREE"
PLAN_BASIC = "BASIC"
PLAN_PRO = "PRO"
PLAN_ENTERPRISE = "ENTERPRISE"

# Feature flags per plan tier.
_ALWAYS_ON = {
    "CASES", "CLIENTS", "DOCUMENTS", "TEAM_MEMBERS", "TASKS", "CALENDAR", "NOTES",
    "DOCUMENT_UPLOAD", "OCR_EXTRACTION", "AI_RESEARCH", "CONTRACT_ANALYSIS",
    "DOCUMENT_SUMMARY", "BILLING_SUBSCRIPTION",
}
_BASIC_EXTRAS = {"TIME_TRACKING", "EXPORTS", "NOTIFICATIONS", "BILLING_INVOICING", "ADMIN_PANEL"}
_PRO_EXTRAS = {"AI_DRAFTING", "AUDIT_TRAIL", "ADVANCED_SEARCH"}

PLAN_FEATURES: Dict[str, FrozenSet[str]] = {
    PLAN_FREE: frozenset(_ALWAYS_ON),
    PLAN_BASIC: frozenset(_ALWAYS_ON | _BASIC_EXTRAS),
    PLAN_PRO: frozenset(_ALWAYS_ON | _BASIC_EXTRAS | _PRO_EXTRAS),
    PLAN_ENTERPRISE: frozenset(_ALWAYS_ON | _BASIC_EXTRAS | _PRO_EXTRAS),
}

_READ_PERMISSIONS = {
    "case.read", "document.read", "event.read", "note.read", "task.read", "time.read",
}

_PARALEGAL_PERMISSIONS = _READ_PERMISSIONS | {
    "case.create", "case.update",
    "client.create", "client.update",
    "document.create", "document.update", "document.summarize",
    "event.create", "event.update",
    "note.create", "note.update",
    "task.create", "task.update", "task.complete",
    "time.create", "time.update",
}

_LAWYER_PERMISSIONS = _PARALEGAL_PERMISSIONS | {
    "case.delete",
    "client.delete",
    "document.delete",
    "event.delete",
    "note.delete",
    "task.delete", "task.assign",
    "time.delete",
    "ai.draft",
    "contract.analyze",
    "billing.manage",
}

_ADMIN_PERMISSIONS = _LAWYER_PERMISSIONS | {
    "admin.manage_users",
    "admin.view_stats",
    "admin.data_export",
    "audit.view",
}

ROLE_PERMISSIONS: Dict[str, FrozenSet[str]] = {
    ROLE_OWNER: frozenset(_ADMIN_PERMISSIONS),
    ROLE_ADMIN: frozenset(_ADMIN_PERMISSIONS),
    ROLE_LAWYER: frozenset(_LAWYER_PERMISSIONS),
    ROLE_PARALEGAL: frozenset(_PARALEGAL_PERMISSIONS),
    ROLE_VIEWER: frozenset(_READ_PERMISSIONS),
}
