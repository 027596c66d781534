"""
Uniform success/error envelopes and the decorator that turns a handler body
into an envelope-returning callable.
"""
import logging
from functools import wraps
from typing import Any, Callable, Dict, Optional

from flask import jsonify
from pydantic import ValidationError

from errors import ErrorCode, HTTP_STATUS_BY_CODE, HandlerError, get_error_message

logger = logging.getLogger(__name__)

INDEX_HINT = "A required database index is missing. Deploy the composite indexes and retry."


def success_response(data: Any) -> Dict[str, Any]:
    return {"success": True, "data": data}


def error_response(code: ErrorCode, message: Optional[str] = None, details: Any = None) -> Dict[str, Any]:
    error = {"code": code.value, "message": get_error_message(code, message)}
    if details is not None:
        error["details"] = details
    return {"success": False, "error": error}


def validation_message(exc: ValidationError) -> str:
    """First error of a pydantic ValidationError, without pydantic's "Value error, " prefix."""
    first = exc.errors()[0]
    ctx_error = (first.get("ctx") or {}).get("error")
    if ctx_error is not None:
        return str(ctx_error)
    return first.get("msg", get_error_message(ErrorCode.VALIDATION_ERROR))


def _is_missing_index(exc: Exception) -> bool:
    text = str(exc)
    return "index" in text.lower() or "FAILED_PRECONDITION" in text


def callable_handler(name: str) -> Callable:
    """Wrap `fn(store, caller, data) -> data` so it always returns an envelope."""
    def decorator(fn):
        @wraps(fn)
        def wrapper(store, caller, data: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
            try:
                return success_response(fn(store, caller, data or {}))
            except HandlerError as e:
                logger.info(f"{name}: {e.code.value} - {e.message}")
                return error_response(e.code, e.message, e.details)
            except ValidationError as e:
                return error_response(
                    ErrorCode.VALIDATION_ERROR,
                    validation_message(e),
                    e.errors(include_url=False, include_context=False),
                )
            except Exception as e:
                if _is_missing_index(e):
                    logger.error(f"{name}: missing index: {e}", exc_info=True)
                    return error_response(ErrorCode.INTERNAL_ERROR, INDEX_HINT)
                logger.error(f"{name} failed: {e}", exc_info=True)
                return error_response(ErrorCode.INTERNAL_ERROR)
        wrapper.callable_name = name
        return wrapper
    return decorator


def http_status_for(envelope: Dict[str, Any]) -> int:
    if envelope.get("success"):
        return 200
    code = envelope.get("error", {}).get("code")
    try:
        return HTTP_STATUS_BY_CODE[ErrorCode(code)]
    except ValueError:
        return 500


def to_http_response(envelope: Dict[str, Any]):
    return jsonify(envelope), http_status_for(envelope)
