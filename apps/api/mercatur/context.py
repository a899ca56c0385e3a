from __future__ import annotations

from contextvars import ContextVar, Token

correlation_id_var: ContextVar[str | None] = ContextVar("correlation_id", default=None)
request_user_id_var: ContextVar[str | None] = ContextVar("request_user_id", default=None)


def set_correlation_id(value: str | None) -> Token[str | None]:
    return correlation_id_var.set(value)


def reset_correlation_id(token: Token[str | None]) -> None:
    correlation_id_var.reset(token)


def get_correlation_id() -> str | None:
    return correlation_id_var.get()


def set_request_user_id(value: str | None) -> Token[str | None]:
    return request_user_id_var.set(value)


def reset_request_user_id(token: Token[str | None]) -> None:
    request_user_id_var.reset(token)


def get_request_user_id() -> str | None:
    return request_user_id_var.get()
