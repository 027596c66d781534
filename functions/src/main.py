# FILE: functions/src/main.py
# Cloud Function HTTP entry points. Each callable handler is exposed as its own
# function; the handler logic lives in the per-domain modules.

import logging

import functions_framework
from flask import Request

from auth import AuthContext, requires_auth
from common import config
from common.clients import get_store
from errors import ErrorCode
from response import error_response, success_response, to_http_response

from organization import (
    create_organization as logic_create_organization,
    join_organization as logic_join_organization,
    get_my_membership as logic_get_my_membership,
)
from client import (
    create_client as logic_create_client,
    get_client as logic_get_client,
    list_clients as logic_list_clients,
    update_client as logic_update_client,
    delete_client as logic_delete_client,
)
from invitation import (
    create_invitation as logic_create_invitation,
    accept_invitation as logic_accept_invitation,
    revoke_invitation as logic_revoke_invitation,
    list_invitations as logic_list_invitations,
)
from invoice import (
    create_invoice as logic_create_invoice,
    list_invoices as logic_list_invoices,
    get_invoice as logic_get_invoice,
    update_invoice as logic_update_invoice,
    record_payment as logic_record_payment,
)
from comment import (
    create_comment as logic_create_comment,
    list_comments as logic_list_comments,
    update_comment as logic_update_comment,
    delete_comment as logic_delete_comment,
)
from notification_inbox import (
    list_notifications as logic_list_notifications,
    mark_notification_read as logic_mark_notification_read,
    mark_all_notifications_read as logic_mark_all_notifications_read,
    unread_notification_count as logic_unread_notification_count,
    get_notification_preferences as logic_get_notification_preferences,
    update_notification_preferences as logic_update_notification_preferences,
)
from outbox import process_due_outbox

# Initialize logging once.
logging.basicConfig(level=config.LOG_LEVEL)
logger = logging.getLogger(__name__)


def request_data(request: Request) -> dict:
    """JSON body of a call. Accepts both a bare object and the callable `{"data": {...}}` wrapper."""
    body = request.get_json(silent=True) or {}
    if not isinstance(body, dict):
        return {}
    wrapped = body.get("data")
    if isinstance(wrapped, dict) and len(body) == 1:
        return wrapped
    return body


def dispatch(handler, request: Request, auth_context: AuthContext):
    envelope = handler(get_store(), auth_context, request_data(request))
    return to_http_response(envelope)


# --- Organizations and memberships ---
@functions_framework.http
@requires_auth
def org_create(request: Request, auth_context: AuthContext):
    return dispatch(logic_create_organization, request, auth_context)

@functions_framework.http
@requires_auth
def org_join(request: Request, auth_context: AuthContext):
    return dispatch(logic_join_organization, request, auth_context)

@functions_framework.http
@requires_auth
def member_get_my_membership(request: Request, auth_context: AuthContext):
    return dispatch(logic_get_my_membership, request, auth_context)

# --- Clients ---
@functions_framework.http
@requires_auth
def client_create(request: Request, auth_context: AuthContext):
    return dispatch(logic_create_client, request, auth_context)

@functions_framework.http
@requires_auth
def client_get(request: Request, auth_context: AuthContext):
    return dispatch(logic_get_client, request, auth_context)

@functions_framework.http
@requires_auth
def client_list(request: Request, auth_context: AuthContext):
    return dispatch(logic_list_clients, request, auth_context)

@functions_framework.http
@requires_auth
def client_update(request: Request, auth_context: AuthContext):
    return dispatch(logic_update_client, request, auth_context)

@functions_framework.http
@requires_auth
def client_delete(request: Request, auth_context: AuthContext):
    return dispatch(logic_delete_client, request, auth_context)

# --- Invitations ---
@functions_framework.http
@requires_auth
def invitation_create(request: Request, auth_context: AuthContext):
    return dispatch(logic_create_invitation, request, auth_context)

@functions_framework.http
@requires_auth
def invitation_accept(request: Request, auth_context: AuthContext):
    return dispatch(logic_accept_invitation, request, auth_context)

@functions_framework.http
@requires_auth
def invitation_revoke(request: Request, auth_context: AuthContext):
    return dispatch(logic_revoke_invitation, request, auth_context)

@functions_framework.http
@requires_auth
def invitation_list(request: Request, auth_context: AuthContext):
    return dispatch(logic_list_invitations, request, auth_context)

# --- Invoices ---
@functions_framework.http
@requires_auth
def invoice_create(request: Request, auth_context: AuthContext):
    return dispatch(logic_create_invoice, request, auth_context)

@functions_framework.http
@requires_auth
def invoice_list(request: Request, auth_context: AuthContext):
    return dispatch(logic_list_invoices, request, auth_context)

@functions_framework.http
@requires_auth
def invoice_get(request: Request, auth_context: AuthContext):
    return dispatch(logic_get_invoice, request, auth_context)

@functions_framework.http
@requires_auth
def invoice_update(request: Request, auth_context: AuthContext):
    return dispatch(logic_update_invoice, request, auth_context)

@functions_framework.http
@requires_auth
def invoice_record_payment(request: Request, auth_context: AuthContext):
    return dispatch(logic_record_payment, request, auth_context)

# --- Comments ---
@functions_framework.http
@requires_auth
def comment_create(request: Request, auth_context: AuthContext):
    return dispatch(logic_create_comment, request, auth_context)

@functions_framework.http
@requires_auth
def comment_list(request: Request, auth_context: AuthContext):
    return dispatch(logic_list_comments, request, auth_context)

@functions_framework.http
@requires_auth
def comment_update(request: Request, auth_context: AuthContext):
    return dispatch(logic_update_comment, request, auth_context)

@functions_framework.http
@requires_auth
def comment_delete(request: Request, auth_context: AuthContext):
    return dispatch(logic_delete_comment, request, auth_context)

# --- Notifications ---
@functions_framework.http
@requires_auth
def notification_list(request: Request, auth_context: AuthContext):
    return dispatch(logic_list_notifications, request, auth_context)

@functions_framework.http
@requires_auth
def notification_mark_read(request: Request, auth_context: AuthContext):
    return dispatch(logic_mark_notification_read, request, auth_context)

@functions_framework.http
@requires_auth
def notification_mark_all_read(request: Request, auth_context: AuthContext):
    return dispatch(logic_mark_all_notifications_read, request, auth_context)

@functions_framework.http
@requires_auth
def notification_unread_count(request: Request, auth_context: AuthContext):
    return dispatch(logic_unread_notification_count, request, auth_context)

@functions_framework.http
@requires_auth
def notification_preferences_get(request: Request, auth_context: AuthContext):
    return dispatch(logic_get_notification_preferences, request, auth_context)

@functions_framework.http
@requires_auth
def notification_preferences_update(request: Request, auth_context: AuthContext):
    return dispatch(logic_update_notification_preferences, request, auth_context)

# --- Outbox dispatch (Cloud Scheduler target) ---
@functions_framework.http
def outbox_process(request: Request):
    try:
        stats = process_due_outbox(get_store())
    except Exception as e:
        logger.error(f"Outbox processing run failed: {e}", exc_info=True)
        return to_http_response(error_response(ErrorCode.INTERNAL_ERROR))
    return to_http_response(success_response(stats))
