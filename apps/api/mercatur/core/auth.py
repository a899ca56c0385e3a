from __future__ import annotations

import logging
import uuid
from typing import Any, Protocol

from jose import JWTError, jwt
from starlette.requests import Request

from mercatur.core.config import Settings, get_settings
from mercatur.platform.security.context import Identity


logger = logging.getLogger("mercatur.auth")


class IdentityProviderError(Exception):
    pass


class IdentityProvider(Protocol):
    def get_current_user(self, request: Request) -> Identity | None: ...

    def sign_up(self, email: str, password: str, metadata: dict[str, Any] | None = None) -> Identity: ...


def _coerce_user_uuid(value: Any) -> uuid.UUID | None:
    if isinstance(value, uuid.UUID):
        return value
    if not isinstance(value, str) or not value:
        return None
    try:
        return uuid.UUID(value)
    except ValueError:
        return None


def _bearer_token(request: Request) -> str:
    auth_header = request.headers.get("authorization", "")
    return auth_header.removeprefix("Bearer ").strip() if auth_header.startswith("Bearer ") else ""


class JwtIdentityProvider:
    """Reads identities from access tokens minted by the hosted auth provider."""

    def __init__(self, settings: Settings | None = None) -> None:
        self.settings = settings or get_settings()

    def decode(self, token: str) -> Identity | None:
        options = {"verify_aud": self.settings.jwt_audience is not None}
        try:
            payload = jwt.decode(
                token,
                self.settings.jwt_secret,
                algorithms=[self.settings.jwt_algorithm],
                audience=self.settings.jwt_audience,
                options=options,
            )
        except JWTError as exc:
            logger.info("auth.token_rejected", extra={"error": str(exc)})
            return None

        user_id = _coerce_user_uuid(payload.get("sub"))
        if user_id is None:
            logger.info("auth.token_rejected", extra={"error": "subject is not a user id"})
            return None

        metadata = payload.get("user_metadata")
        email = payload.get("email")
        return Identity(
            user_id=user_id,
            email=email if isinstance(email, str) else None,
            metadata=dict(metadata) if isinstance(metadata, dict) else {},
        )

    def get_current_user(self, request: Request) -> Identity | None:
        token = _bearer_token(request)
        if not token:
            return None
        return self.decode(token)

    def sign_up(self, email: str, password: str, metadata: dict[str, Any] | None = None) -> Identity:
        raise IdentityProviderError("Sign-up is handled by the hosted identity provider.")


_provider: IdentityProvider = JwtIdentityProvider()


def get_identity_provider() -> IdentityProvider:
    return _provider


def set_identity_provider(provider: IdentityProvider) -> None:
    global _provider
    _provider = provider


async def get_current_identity(request: Request) -> Identity | None:
    identity = get_identity_provider().get_current_user(request)
    if identity is not None:
        request.state.user_id = identity.subject
    return identity
