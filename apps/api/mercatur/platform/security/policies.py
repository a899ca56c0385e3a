from __future__ import annotations

from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from enum import StrEnum
from threading import Lock
from typing import Any

from sqlalchemy import ColumnElement, Uuid, false, literal, true

from mercatur.platform.security.context import Identity


class PolicyCommand(StrEnum):
    SELECT = "select"
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


PolicyPredicate = Callable[[ColumnElement[Any]], ColumnElement[bool]]


@dataclass(frozen=True, slots=True)
class RowPolicy:
    """One row-level rule for a table and command.

    ``using`` decides which stored rows are visible to (or targetable by) the
    command; ``with_check`` decides which new row states may be written. As in
    Postgres, an UPDATE policy without ``with_check`` checks the new row with
    ``using``.
    """

    command: PolicyCommand
    using: PolicyPredicate | None = None
    with_check: PolicyPredicate | None = None


@dataclass(slots=True)
class TablePolicies:
    resource: str
    model: type[Any]
    rules: dict[PolicyCommand, RowPolicy] = field(default_factory=dict)


def authenticated(uid: ColumnElement[Any]) -> ColumnElement[bool]:
    return true()


def current_user_literal(identity: Identity) -> ColumnElement[Any]:
    return literal(identity.user_id, Uuid(as_uuid=True))


class PolicyStore:
    """Registry of row policies keyed by mapped class.

    A command without a registered rule denies everything, matching a table
    with row security enabled and no permissive policy for that command.
    """

    def __init__(self) -> None:
        self._tables: dict[type[Any], TablePolicies] = {}
        self._lock = Lock()

    def register(self, model: type[Any], resource: str, *rules: RowPolicy) -> TablePolicies:
        with self._lock:
            table = TablePolicies(resource=resource, model=model)
            for rule in rules:
                table.rules[rule.command] = rule
            self._tables[model] = table
            return table

    def __iter__(self) -> Iterator[TablePolicies]:
        return iter(list(self._tables.values()))

    def resource_for(self, model: type[Any]) -> str:
        table = self._tables.get(model)
        if table is not None:
            return table.resource
        return getattr(model, "__policy_resource__", model.__name__)

    def is_policed(self, model: type[Any]) -> bool:
        return model in self._tables or hasattr(model, "__policy_resource__")

    def using(self, model: type[Any], command: PolicyCommand, uid: ColumnElement[Any]) -> ColumnElement[bool]:
        table = self._tables.get(model)
        rule = table.rules.get(command) if table is not None else None
        if rule is None or rule.using is None:
            return false()
        return rule.using(uid)

    def with_check(self, model: type[Any], command: PolicyCommand, uid: ColumnElement[Any]) -> ColumnElement[bool]:
        table = self._tables.get(model)
        rule = table.rules.get(command) if table is not None else None
        if rule is None:
            return false()
        if rule.with_check is not None:
            return rule.with_check(uid)
        if command is PolicyCommand.UPDATE and rule.using is not None:
            return rule.using(uid)
        return false()


policy_store = PolicyStore()


def register_row_policies(model: type[Any], resource: str, *rules: RowPolicy) -> TablePolicies:
    return policy_store.register(model, resource, *rules)
