"""
Error codes and messages shared by every callable handler.
"""
from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(str, Enum):
    ORG_REQUIRED = 'ORG_REQUIRED'
    NOT_AUTHORIZED = 'NOT_AUTHORIZED'
    PLAN_LIMIT = 'PLAN_LIMIT'
    VALIDATION_ERROR = 'VALIDATION_ERROR'
    NOT_FOUND = 'NOT_FOUND'
    INTERNAL_ERROR = 'INTERNAL_ERROR'
    RATE_LIMITED = 'RATE_LIMITED'
    CONFLICT = 'CONFLICT'
    SAFETY_ERROR = 'SAFETY_ERROR'
    INVALID_STATUS_TRANSITION = 'INVALID_STATUS_TRANSITION'
    INVALID_DUE_DATE = 'INVALID_DUE_DATE'
    ASSIGNEE_NOT_MEMBER = 'ASSIGNEE_NOT_MEMBER'
    ASSIGNEE_NOT_CASE_PARTICIPANT = 'ASSIGNEE_NOT_CASE_PARTICIPANT'


ERROR_MESSAGES: Dict[ErrorCode, str] = {
    ErrorCode.ORG_REQUIRED: 'Organization ID is required to perform this action',
    ErrorCode.NOT_AUTHORIZED: 'You do not have permission to perform this action',
    ErrorCode.PLAN_LIMIT: 'This feature requires a higher plan. Upgrade to continue.',
    ErrorCode.VALIDATION_ERROR: 'Invalid input provided',
    ErrorCode.NOT_FOUND: 'Resource not found',
    ErrorCode.INTERNAL_ERROR: 'An internal error occurred',
    ErrorCode.RATE_LIMITED: 'Too many requests. Please try again later.',
    ErrorCode.CONFLICT: 'Operation conflicts with existing data',
    ErrorCode.SAFETY_ERROR: 'Safety check failed',
    ErrorCode.INVALID_STATUS_TRANSITION: 'Invalid status transition',
    ErrorCode.INVALID_DUE_DATE: 'Due date must be today or in the future',
    ErrorCode.ASSIGNEE_NOT_MEMBER: 'Assignee must be a member of the organization',
    ErrorCode.ASSIGNEE_NOT_CASE_PARTICIPANT: 'Assignee must be the case creator or a case participant',
}

# HTTP status used when an envelope is returned over plain HTTP.
HTTP_STATUS_BY_CODE: Dict[ErrorCode, int] = {
    ErrorCode.ORG_REQUIRED: 400,
    ErrorCode.VALIDATION_ERROR: 400,
    ErrorCode.INVALID_STATUS_TRANSITION: 400,
    ErrorCode.INVALID_DUE_DATE: 400,
    ErrorCode.NOT_AUTHORIZED: 403,
    ErrorCode.PLAN_LIMIT: 403,
    ErrorCode.ASSIGNEE_NOT_MEMBER: 403,
    ErrorCode.ASSIGNEE_NOT_CASE_PARTICIPANT: 403,
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.CONFLICT: 409,
    ErrorCode.RATE_LIMITED: 429,
    ErrorCode.SAFETY_ERROR: 500,
    ErrorCode.INTERNAL_ERROR: 500,
}


def get_error_message(code: ErrorCode, custom_message: Optional[str] = None) -> str:
    return custom_message or ERROR_MESSAGES[code]


class HandlerError(Exception):
    """Raised inside a handler to short-circuit with an error envelope."""

    def __init__(self, code: ErrorCode, message: Optional[str] = None, details: Any = None):
        self.code = code
        self.message = get_error_message(code, message)
        self.details = details
        super().__init__(f"{code.value}: {self.message}")
