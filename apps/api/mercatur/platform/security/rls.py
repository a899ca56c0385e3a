from __future__ import annotations

import logging
from collections.abc import Generator
from contextlib import contextmanager
from typing import Any

from sqlalchemy import event, false, inspect, literal, select, text
from sqlalchemy.orm import ORMExecuteState, Session, UOWTransaction, with_loader_criteria

from mercatur import audit
from mercatur.metrics import observe_row_policy_denied
from mercatur.platform.security.context import Identity
from mercatur.platform.security.errors import RowPolicyViolation
from mercatur.platform.security.policies import PolicyCommand, current_user_literal, policy_store


logger = logging.getLogger("mercatur.security.rls")

IDENTITY_KEY = "mercatur.identity"


def bind_identity(session: Session, identity: Identity | None) -> None:
    """Attach the identity that row policies evaluate against for this session."""

    if identity is None:
        session.info.pop(IDENTITY_KEY, None)
    else:
        session.info[IDENTITY_KEY] = identity
    if session.in_transaction() and session.get_bind().dialect.name == "postgresql":
        _set_database_identity(session.connection(), identity)


def current_identity(session: Session) -> Identity | None:
    return session.info.get(IDENTITY_KEY)


@contextmanager
def identity_scope(session: Session, identity: Identity | None) -> Generator[Session, None, None]:
    previous = current_identity(session)
    bind_identity(session, identity)
    try:
        yield session
    finally:
        # The next transaction picks the restored identity up in after_begin.
        if previous is None:
            session.info.pop(IDENTITY_KEY, None)
        else:
            session.info[IDENTITY_KEY] = previous


def is_policy_bypass(identity: Identity | None) -> bool:
    return identity is not None and identity.is_system


def _set_database_identity(connection: Any, identity: Identity | None) -> None:
    if identity is None:
        user_id, role = "", "anon"
    elif identity.is_system:
        user_id, role = "", "system"
    else:
        user_id, role = str(identity.user_id), "authenticated"
    connection.execute(
        text("SELECT set_config('app.current_user_id', :user_id, true), set_config('app.current_role', :role, true)"),
        {"user_id": user_id, "role": role},
    )


@event.listens_for(Session, "after_begin")
def _on_after_begin(session: Session, transaction: Any, connection: Any) -> None:
    if connection.dialect.name != "postgresql":
        return
    _set_database_identity(connection, current_identity(session))


@event.listens_for(Session, "do_orm_execute")
def _apply_row_policies(execute_state: ORMExecuteState) -> None:
    identity = current_identity(execute_state.session)
    if is_policy_bypass(identity):
        return

    if execute_state.is_select:
        # Refreshing attributes of an already-loaded object is not a new read.
        if execute_state.is_column_load:
            return
        options = []
        for table in policy_store:
            if identity is None:
                criteria = false()
            else:
                criteria = policy_store.using(table.model, PolicyCommand.SELECT, current_user_literal(identity))
            options.append(with_loader_criteria(table.model, criteria, include_aliases=True))
        if options:
            execute_state.statement = execute_state.statement.options(*options)
        return

    mapper = execute_state.bind_mapper
    model = mapper.class_ if mapper is not None else None
    if model is None or not policy_store.is_policed(model):
        return

    if execute_state.is_update or execute_state.is_delete:
        command = PolicyCommand.UPDATE if execute_state.is_update else PolicyCommand.DELETE
        if identity is None:
            predicate = false()
        else:
            predicate = policy_store.using(model, command, current_user_literal(identity))
        execute_state.statement = execute_state.statement.where(predicate)
    elif execute_state.is_insert:
        _deny(model, PolicyCommand.INSERT, identity, None)


@event.listens_for(Session, "before_flush")
def _check_stored_rows(session: Session, flush_context: UOWTransaction, instances: Any) -> None:
    identity = current_identity(session)
    if is_policy_bypass(identity):
        return

    for obj in list(session.dirty):
        if policy_store.is_policed(type(obj)) and session.is_modified(obj, include_collections=False):
            _require_stored_row(session, obj, PolicyCommand.UPDATE, identity)
    for obj in list(session.deleted):
        if policy_store.is_policed(type(obj)):
            _require_stored_row(session, obj, PolicyCommand.DELETE, identity)


@event.listens_for(Session, "after_flush")
def _check_written_rows(session: Session, flush_context: UOWTransaction) -> None:
    identity = current_identity(session)
    if is_policy_bypass(identity):
        return

    for obj in list(session.new):
        if policy_store.is_policed(type(obj)):
            _require_written_row(session, obj, PolicyCommand.INSERT, identity)
    for obj in list(session.dirty):
        if policy_store.is_policed(type(obj)) and session.is_modified(obj, include_collections=False):
            _require_written_row(session, obj, PolicyCommand.UPDATE, identity)


def _require_stored_row(session: Session, obj: Any, command: PolicyCommand, identity: Identity | None) -> None:
    model = type(obj)
    state = inspect(obj)
    stored_id = state.identity[0] if state.identity else None
    if identity is None or stored_id is None:
        _deny(model, command, identity, stored_id)

    table = model.__table__
    predicate = policy_store.using(model, command, current_user_literal(identity))
    stmt = select(literal(1)).select_from(table).where(table.c.id == stored_id, predicate)
    if session.connection().execute(stmt).first() is None:
        _deny(model, command, identity, stored_id)


def _require_written_row(session: Session, obj: Any, command: PolicyCommand, identity: Identity | None) -> None:
    model = type(obj)
    row_id = getattr(obj, "id", None)
    if identity is None or row_id is None:
        _deny(model, command, identity, row_id)

    table = model.__table__
    predicate = policy_store.with_check(model, command, current_user_literal(identity))
    stmt = select(literal(1)).select_from(table).where(table.c.id == row_id, predicate)
    if session.connection().execute(stmt).first() is None:
        _deny(model, command, identity, row_id)


def _deny(model: type[Any], command: PolicyCommand, identity: Identity | None, entity_id: Any) -> None:
    resource = policy_store.resource_for(model)
    observe_row_policy_denied(resource=resource, command=command.value)
    actor = identity.subject if identity is not None else None
    audit.record(
        actor_user_id=actor,
        entity_type=resource,
        entity_id=str(entity_id) if entity_id is not None else None,
        action="row_policy.denied",
        details={"command": command.value},
    )
    logger.warning(
        "row_policy.denied",
        extra={"resource": resource, "command": command.value, "entity_id": str(entity_id), "user_id": actor},
    )
    raise RowPolicyViolation(resource, command.value, entity_id)
