from __future__ import annotations

import uuid
from typing import Any

from fastapi import APIRouter, Body, Depends, status
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from sqlalchemy.orm import Session

from mercatur.core.auth import get_current_identity, get_identity_provider
from mercatur.core.database import get_db
from mercatur.crm.api import result_response
from mercatur.crm.results import sanitize_error
from mercatur.platform.security.context import Identity
from mercatur.profiles.schemas import SignUpRequest
from mercatur.profiles.service import profile_service


router = APIRouter(prefix="/api", tags=["profiles"])


@router.post("/auth/sign-up", status_code=status.HTTP_201_CREATED)
def sign_up(payload: dict[str, Any] = Body(...), db: Session = Depends(get_db)) -> JSONResponse:
    try:
        request = SignUpRequest.model_validate(payload)
    except ValidationError as exc:
        return result_response(sanitize_error(exc))
    result = profile_service.sign_up_with_profile(
        db,
        get_identity_provider(),
        request.email,
        request.password,
        request.full_name,
    )
    return result_response(result, success_status=status.HTTP_201_CREATED)


@router.get("/profiles/me")
def my_profile(
    db: Session = Depends(get_db),
    identity: Identity | None = Depends(get_current_identity),
) -> JSONResponse:
    return result_response(profile_service.check_auth_and_ensure_profile(db, identity))


@router.get("/profiles")
def list_profiles(
    db: Session = Depends(get_db),
    identity: Identity | None = Depends(get_current_identity),
) -> JSONResponse:
    return result_response(profile_service.list_profiles(db, identity))


@router.get("/profiles/{user_id}")
def get_profile(
    user_id: uuid.UUID,
    db: Session = Depends(get_db),
    identity: Identity | None = Depends(get_current_identity),
) -> JSONResponse:
    return result_response(profile_service.get_profile(db, identity, user_id))


@router.patch("/profiles/{user_id}")
def update_profile(
    user_id: uuid.UUID,
    payload: dict[str, Any] = Body(...),
    db: Session = Depends(get_db),
    identity: Identity | None = Depends(get_current_identity),
) -> JSONResponse:
    return result_response(profile_service.update_profile(db, identity, user_id, payload))
