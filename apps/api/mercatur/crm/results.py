from __future__ import annotations

import functools
import logging
from collections.abc import Callable
from enum import StrEnum
from typing import Any, Generic, Literal, TypeVar, Union

from pydantic import BaseModel, ValidationError
from sqlalchemy.exc import DBAPIError, IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from mercatur.context import reset_request_user_id, set_request_user_id
from mercatur.core.config import get_settings
from mercatur.metrics import observe_action_error
from mercatur.otel import get_tracer
from mercatur.platform.security.context import Identity
from mercatur.platform.security.errors import AuthorizationError
from mercatur.platform.security.rls import identity_scope


logger = logging.getLogger("mercatur.crm.actions")
tracer = get_tracer("mercatur.crm")

T = TypeVar("T")


class ErrorCode(StrEnum):
    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"
    NOT_FOUND = "NOT_FOUND"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    CONFLICT = "CONFLICT"
    DATABASE_ERROR = "DATABASE_ERROR"
    INTERNAL_ERROR = "INTERNAL_ERROR"


MESSAGES: dict[ErrorCode, str] = {
    ErrorCode.UNAUTHORIZED: "You must be signed in to perform this action.",
    ErrorCode.FORBIDDEN: "You do not have access to this resource.",
    ErrorCode.NOT_FOUND: "The requested record was not found.",
    ErrorCode.VALIDATION_ERROR: "The submitted data is invalid.",
    ErrorCode.CONFLICT: "The change conflicts with existing data.",
    ErrorCode.DATABASE_ERROR: "A database error occurred. Please try again.",
    ErrorCode.INTERNAL_ERROR: "An unexpected error occurred.",
}

_DUPLICATE_MESSAGE = "A record with these values already exists."
_REFERENCE_MESSAGE = "The record references data that does not exist or is still in use."


class ActionSuccess(BaseModel, Generic[T]):
    success: Literal[True] = True
    data: T


class ActionError(BaseModel):
    success: Literal[False] = False
    error: str
    code: ErrorCode
    details: str | None = None


ActionResult = Union[ActionSuccess[T], ActionError]


class ActionFailure(Exception):
    code = ErrorCode.INTERNAL_ERROR

    def __init__(self, message: str | None = None) -> None:
        self.message = message or MESSAGES[self.code]
        super().__init__(self.message)


class Unauthorized(ActionFailure):
    code = ErrorCode.UNAUTHORIZED


class NotFound(ActionFailure):
    code = ErrorCode.NOT_FOUND

    def __init__(self, entity_label: str | None = None) -> None:
        super().__init__(f"{entity_label} was not found." if entity_label else None)


class ValidationFailed(ActionFailure):
    code = ErrorCode.VALIDATION_ERROR


def _first_validation_message(exc: ValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return MESSAGES[ErrorCode.VALIDATION_ERROR]
    first = errors[0]
    message = str(first.get("msg", "")).removeprefix("Value error, ")
    field = ".".join(str(part) for part in first.get("loc", ()) if part != "__root__")
    return f"{field}: {message}" if field else message


def _sqlstate(exc: DBAPIError) -> str | None:
    original = exc.orig
    return getattr(original, "sqlstate", None) or getattr(original, "pgcode", None)


def _classify_integrity_error(exc: IntegrityError) -> tuple[ErrorCode, str]:
    state = _sqlstate(exc)
    text = str(exc.orig).lower() if exc.orig is not None else str(exc).lower()
    if state == "23505" or "unique constraint" in text:
        return ErrorCode.CONFLICT, _DUPLICATE_MESSAGE
    if state == "23503" or "foreign key constraint" in text:
        return ErrorCode.CONFLICT, _REFERENCE_MESSAGE
    if state in {"23502", "23514"} or "not null constraint" in text or "check constraint" in text:
        return ErrorCode.VALIDATION_ERROR, MESSAGES[ErrorCode.VALIDATION_ERROR]
    return ErrorCode.CONFLICT, MESSAGES[ErrorCode.CONFLICT]


def _is_row_security_error(exc: DBAPIError) -> bool:
    if _sqlstate(exc) == "42501":
        return True
    text = str(exc.orig).lower() if exc.orig is not None else ""
    return "row-level security" in text or "policy" in text


def sanitize_error(exc: BaseException) -> ActionError:
    """Map any failure to the result taxonomy without leaking storage details."""

    if isinstance(exc, ActionFailure):
        code, message = exc.code, exc.message
    elif isinstance(exc, ValidationError):
        code, message = ErrorCode.VALIDATION_ERROR, _first_validation_message(exc)
    elif isinstance(exc, AuthorizationError):
        code, message = ErrorCode.FORBIDDEN, MESSAGES[ErrorCode.FORBIDDEN]
    elif isinstance(exc, IntegrityError):
        code, message = _classify_integrity_error(exc)
    elif isinstance(exc, DBAPIError) and _is_row_security_error(exc):
        code, message = ErrorCode.FORBIDDEN, MESSAGES[ErrorCode.FORBIDDEN]
    elif isinstance(exc, SQLAlchemyError):
        code, message = ErrorCode.DATABASE_ERROR, MESSAGES[ErrorCode.DATABASE_ERROR]
    else:
        code, message = ErrorCode.INTERNAL_ERROR, MESSAGES[ErrorCode.INTERNAL_ERROR]

    details = str(exc) if get_settings().expose_error_details else None
    return ActionError(error=message, code=code, details=details)


def action_boundary(entity: str, action: str) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """Turn a service method into a never-raising repository function.

    The wrapped method receives ``(self, session, identity, ...)`` with a
    non-null identity bound to the session's row policies and returns plain
    data; the wrapper returns ``ActionSuccess`` or the mapped ``ActionError``.
    """

    def decorator(func: Callable[..., T]) -> Callable[..., ActionResult[T]]:
        @functools.wraps(func)
        def wrapper(self: Any, session: Session, identity: Identity | None, *args: Any, **kwargs: Any) -> ActionResult[T]:
            user_token = set_request_user_id(identity.subject if identity is not None else None)
            with tracer.start_as_current_span(f"{entity}.{action}") as span:
                span.set_attribute("crm.entity", entity)
                span.set_attribute("crm.action", action)
                try:
                    if identity is None:
                        raise Unauthorized()
                    with identity_scope(session, identity):
                        data = func(self, session, identity, *args, **kwargs)
                    return ActionSuccess(data=data)
                except Exception as exc:
                    session.rollback()
                    result = sanitize_error(exc)
                    span.set_attribute("crm.error_code", result.code.value)
                    observe_action_error(entity=entity, code=result.code.value)
                    log = logger.error if result.code in {ErrorCode.DATABASE_ERROR, ErrorCode.INTERNAL_ERROR} else logger.info
                    log(
                        "crm.action_failed",
                        exc_info=result.code is ErrorCode.INTERNAL_ERROR,
                        extra={
                            "entity_type": entity,
                            "action": action,
                            "error_code": result.code.value,
                            "error": str(exc),
                        },
                    )
                    return result
                finally:
                    reset_request_user_id(user_token)

        return wrapper

    return decorator
