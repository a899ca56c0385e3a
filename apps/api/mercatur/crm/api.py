from __future__ import annotations

import uuid
from typing import Any

from fastapi import APIRouter, Body, Depends, Query, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from mercatur.core.auth import get_current_identity
from mercatur.core.database import get_db
from mercatur.crm.dashboard import dashboard_service
from mercatur.crm.results import ActionError, ActionSuccess, ErrorCode
from mercatur.crm.search import search_service
from mercatur.crm.service import communication_service, contact_service, customer_service, deal_service
from mercatur.platform.security.context import Identity


customers_router = APIRouter(prefix="/api/customers", tags=["crm.customers"])
contacts_router = APIRouter(prefix="/api", tags=["crm.contacts"])
deals_router = APIRouter(prefix="/api", tags=["crm.deals"])
communications_router = APIRouter(prefix="/api", tags=["crm.communications"])
search_router = APIRouter(prefix="/api", tags=["crm.search"])
dashboard_router = APIRouter(prefix="/api/dashboard", tags=["crm.dashboard"])

STATUS_BY_CODE: dict[ErrorCode, int] = {
    ErrorCode.UNAUTHORIZED: status.HTTP_401_UNAUTHORIZED,
    ErrorCode.FORBIDDEN: status.HTTP_403_FORBIDDEN,
    ErrorCode.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorCode.VALIDATION_ERROR: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ErrorCode.CONFLICT: status.HTTP_409_CONFLICT,
    ErrorCode.DATABASE_ERROR: status.HTTP_503_SERVICE_UNAVAILABLE,
    ErrorCode.INTERNAL_ERROR: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


def result_response(result: ActionSuccess[Any] | ActionError, *, success_status: int = status.HTTP_200_OK) -> JSONResponse:
    status_code = success_status if result.success else STATUS_BY_CODE[result.code]
    return JSONResponse(status_code=status_code, content=result.model_dump(mode="json"))


@customers_router.post("", status_code=status.HTTP_201_CREATED)
def create_customer(
    payload: dict[str, Any] = Body(...),
    db: Session = Depends(get_db),
    identity: Identity | None = Depends(get_current_identity),
) -> JSONResponse:
    return result_response(customer_service.create(db, identity, payload), success_status=status.HTTP_201_CREATED)


@customers_router.get("")
def list_customers(
    page: int = Query(default=1),
    limit: int | None = Query(default=None),
    db: Session = Depends(get_db),
    identity: Identity | None = Depends(get_current_identity),
) -> JSONResponse:
    return result_response(customer_service.list_customers(db, identity, page=page, limit=limit))


@customers_router.get("/search")
def search_customers(
    q: str = Query(default=""),
    db: Session = Depends(get_db),
    identity: Identity | None = Depends(get_current_identity),
) -> JSONResponse:
    return result_response(customer_service.search_customers(db, identity, q))


@customers_router.get("/{customer_id}")
def get_customer(
    customer_id: uuid.UUID,
    db: Session = Depends(get_db),
    identity: Identity | None = Depends(get_current_identity),
) -> JSONResponse:
    return result_response(customer_service.get_by_id(db, identity, customer_id))


@customers_router.patch("/{customer_id}")
def update_customer(
    customer_id: uuid.UUID,
    payload: dict[str, Any] = Body(...),
    db: Session = Depends(get_db),
    identity: Identity | None = Depends(get_current_identity),
) -> JSONResponse:
    return result_response(customer_service.update(db, identity, customer_id, payload))


@customers_router.delete("/{customer_id}")
def delete_customer(
    customer_id: uuid.UUID,
    db: Session = Depends(get_db),
    identity: Identity | None = Depends(get_current_identity),
) -> JSONResponse:
    return result_response(customer_service.delete(db, identity, customer_id))


@contacts_router.post("/contacts", status_code=status.HTTP_201_CREATED)
def create_contact(
    payload: dict[str, Any] = Body(...),
    db: Session = Depends(get_db),
    identity: Identity | None = Depends(get_current_identity),
) -> JSONResponse:
    return result_response(contact_service.create(db, identity, payload), success_status=status.HTTP_201_CREATED)


@contacts_router.get("/customers/{customer_id}/contacts")
def list_contacts(
    customer_id: uuid.UUID,
    db: Session = Depends(get_db),
    identity: Identity | None = Depends(get_current_identity),
) -> JSONResponse:
    return result_response(contact_service.list_for_customer(db, identity, customer_id))


@contacts_router.get("/contacts/{contact_id}")
def get_contact(
    contact_id: uuid.UUID,
    db: Session = Depends(get_db),
    identity: Identity | None = Depends(get_current_identity),
) -> JSONResponse:
    return result_response(contact_service.get_by_id(db, identity, contact_id))


@contacts_router.patch("/contacts/{contact_id}")
def update_contact(
    contact_id: uuid.UUID,
    payload: dict[str, Any] = Body(...),
    db: Session = Depends(get_db),
    identity: Identity | None = Depends(get_current_identity),
) -> JSONResponse:
    return result_response(contact_service.update(db, identity, contact_id, payload))


@contacts_router.delete("/contacts/{contact_id}")
def delete_contact(
    contact_id: uuid.UUID,
    db: Session = Depends(get_db),
    identity: Identity | None = Depends(get_current_identity),
) -> JSONResponse:
    return result_response(contact_service.delete(db, identity, contact_id))


@deals_router.post("/deals", status_code=status.HTTP_201_CREATED)
def create_deal(
    payload: dict[str, Any] = Body(...),
    db: Session = Depends(get_db),
    identity: Identity | None = Depends(get_current_identity),
) -> JSONResponse:
    return result_response(deal_service.create(db, identity, payload), success_status=status.HTTP_201_CREATED)


@deals_router.get("/deals")
def list_deals(
    stage: str | None = Query(default=None),
    db: Session = Depends(get_db),
    identity: Identity | None = Depends(get_current_identity),
) -> JSONResponse:
    return result_response(deal_service.list_deals(db, identity, stage=stage))


@deals_router.get("/customers/{customer_id}/deals")
def list_customer_deals(
    customer_id: uuid.UUID,
    db: Session = Depends(get_db),
    identity: Identity | None = Depends(get_current_identity),
) -> JSONResponse:
    return result_response(deal_service.list_for_customer(db, identity, customer_id))


@deals_router.get("/deals/{deal_id}")
def get_deal(
    deal_id: uuid.UUID,
    db: Session = Depends(get_db),
    identity: Identity | None = Depends(get_current_identity),
) -> JSONResponse:
    return result_response(deal_service.get_by_id(db, identity, deal_id))


@deals_router.patch("/deals/{deal_id}")
def update_deal(
    deal_id: uuid.UUID,
    payload: dict[str, Any] = Body(...),
    db: Session = Depends(get_db),
    identity: Identity | None = Depends(get_current_identity),
) -> JSONResponse:
    return result_response(deal_service.update(db, identity, deal_id, payload))


@deals_router.delete("/deals/{deal_id}")
def delete_deal(
    deal_id: uuid.UUID,
    db: Session = Depends(get_db),
    identity: Identity | None = Depends(get_current_identity),
) -> JSONResponse:
    return result_response(deal_service.delete(db, identity, deal_id))


@communications_router.post("/communications", status_code=status.HTTP_201_CREATED)
def create_communication(
    payload: dict[str, Any] = Body(...),
    db: Session = Depends(get_db),
    identity: Identity | None = Depends(get_current_identity),
) -> JSONResponse:
    return result_response(
        communication_service.create(db, identity, payload),
        success_status=status.HTTP_201_CREATED,
    )


@communications_router.get("/customers/{customer_id}/communications")
def list_communications(
    customer_id: uuid.UUID,
    db: Session = Depends(get_db),
    identity: Identity | None = Depends(get_current_identity),
) -> JSONResponse:
    return result_response(communication_service.list_for_customer(db, identity, customer_id))


@communications_router.get("/communications/{communication_id}")
def get_communication(
    communication_id: uuid.UUID,
    db: Session = Depends(get_db),
    identity: Identity | None = Depends(get_current_identity),
) -> JSONResponse:
    return result_response(communication_service.get_by_id(db, identity, communication_id))


@communications_router.patch("/communications/{communication_id}")
def update_communication(
    communication_id: uuid.UUID,
    payload: dict[str, Any] = Body(...),
    db: Session = Depends(get_db),
    identity: Identity | None = Depends(get_current_identity),
) -> JSONResponse:
    return result_response(communication_service.update(db, identity, communication_id, payload))


@communications_router.delete("/communications/{communication_id}")
def delete_communication(
    communication_id: uuid.UUID,
    db: Session = Depends(get_db),
    identity: Identity | None = Depends(get_current_identity),
) -> JSONResponse:
    return result_response(communication_service.delete(db, identity, communication_id))


@search_router.get("/search")
def search(
    q: str = Query(default=""),
    db: Session = Depends(get_db),
    identity: Identity | None = Depends(get_current_identity),
) -> JSONResponse:
    return result_response(search_service.search_entities(db, identity, q))


@dashboard_router.get("/stats")
def dashboard_stats(
    db: Session = Depends(get_db),
    identity: Identity | None = Depends(get_current_identity),
) -> JSONResponse:
    return result_response(dashboard_service.get_dashboard_stats(db, identity))


@dashboard_router.get("/activity")
def dashboard_activity(
    limit: int = Query(default=10, ge=1, le=50),
    db: Session = Depends(get_db),
    identity: Identity | None = Depends(get_current_identity),
) -> JSONResponse:
    return result_response(dashboard_service.get_recent_activity(db, identity, limit=limit))
