import base64
import json
import logging
from dataclasses import dataclass
from functools import wraps
from typing import Any, Dict, Optional, Tuple

from firebase_admin import auth as firebase_auth_admin
from flask import Request, jsonify

from common.clients import ensure_firebase_app

logger = logging.getLogger(__name__)

USERINFO_HEADERS = ("x-endpoint-api-userinfo", "x-apigateway-api-userinfo")
UNAUTHENTICATED_MESSAGE = "User must be authenticated"


@dataclass
class AuthContext:
    """Verified identity of the caller, as produced by the identity provider."""
    uid: str
    email: str = ""
    is_authenticated_call_from_gateway: bool = False


def _decode_userinfo_header(userinfo_header: str) -> Dict[str, Any]:
    # API Gateway forwards the validated token claims as unpadded base64 JSON.
    padding_needed = len(userinfo_header) % 4
    if padding_needed:
        userinfo_header += '=' * (4 - padding_needed)
    decoded = base64.urlsafe_b64decode(userinfo_header).decode("utf-8")
    return json.loads(decoded)


def validate_firebase_id_token(token: str) -> Dict[str, Any]:
    ensure_firebase_app()
    return firebase_auth_admin.verify_id_token(token)


def get_authenticated_user(request: Request) -> Tuple[Optional[AuthContext], int, Optional[str]]:
    """Authenticate the caller.

    Handles both:
    1. Gateway-forwarded auth (JWT validated by API gateway, forwarded as X-Endpoint-API-Userinfo)
    2. Direct auth (validate Firebase ID token directly) - used in local dev or direct-to-function calls

    Returns a tuple of (auth_context, status_code, error_message)
    where auth_context is None if authentication failed.
    """
    userinfo_header = None
    for header_key, header_val in request.headers.items():
        if header_key.lower() in USERINFO_HEADERS:
            userinfo_header = header_val
            break

    if userinfo_header:
        try:
            claims = _decode_userinfo_header(userinfo_header)
        except (ValueError, UnicodeDecodeError) as e:
            logger.warning(f"Could not decode userinfo header: {e}")
            return None, 401, "Invalid userinfo header"

        uid = claims.get("sub") or claims.get("user_id")
        if not uid:
            logger.warning("Missing subject (user ID) in userinfo header")
            return None, 401, "Missing subject (user ID) in userinfo header"
        return AuthContext(uid=uid, email=claims.get("email") or "", is_authenticated_call_from_gateway=True), 200, None

    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer "):
        return None, 401, UNAUTHENTICATED_MESSAGE
    token = auth_header[7:]

    try:
        claims = validate_firebase_id_token(token)
    except (ValueError, firebase_auth_admin.InvalidIdTokenError, firebase_auth_admin.ExpiredIdTokenError,
            firebase_auth_admin.RevokedIdTokenError, firebase_auth_admin.CertificateFetchError) as e:
        logger.warning(f"Firebase token validation failed: {e}")
        return None, 401, UNAUTHENTICATED_MESSAGE

    uid = claims.get("sub") or claims.get("uid")
    if not uid:
        return None, 401, "Invalid Firebase token: missing subject claim"
    return AuthContext(uid=uid, email=claims.get("email", "") or ""), 200, None


def find_user_id_by_email(email: str) -> Optional[str]:
    """Resolve an identity-provider account by email; None when no account exists."""
    ensure_firebase_app()
    try:
        return firebase_auth_admin.get_user_by_email(email).uid
    except firebase_auth_admin.UserNotFoundError:
        return None


def lookup_user_email(uid: str) -> Optional[str]:
    ensure_firebase_app()
    try:
        return firebase_auth_admin.get_user(uid).email
    except firebase_auth_admin.UserNotFoundError:
        return None


def requires_auth(func):
    """
    Decorator for Flask cloud function endpoints to require authentication.
    Passes the authenticated user to the decorated function.
    """
    @wraps(func)
    def wrapper(request: Request, *args, **kwargs):
        # Handle OPTIONS request for CORS
        if request.method == 'OPTIONS':
            return '', 204

        auth_context, status_code, error_message = get_authenticated_user(request)

        if error_message or not auth_context:
            envelope = {
                "success": False,
                "error": {"code": "NOT_AUTHORIZED", "message": error_message or UNAUTHENTICATED_MESSAGE},
            }
            return jsonify(envelope), status_code if status_code >= 400 else 401

        return func(request, auth_context, *args, **kwargs)

    return wrapper
