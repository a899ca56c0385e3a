from mercatur.platform.security.context import SYSTEM_IDENTITY, Identity
from mercatur.platform.security.errors import AccessDenied, AuthorizationError, RowPolicyViolation
from mercatur.platform.security.policies import (
    PolicyCommand,
    PolicyStore,
    RowPolicy,
    policy_store,
    register_row_policies,
)
from mercatur.platform.security.repository import BaseRepository
from mercatur.platform.security.rls import bind_identity, current_identity, identity_scope

__all__ = [
    "AccessDenied",
    "AuthorizationError",
    "BaseRepository",
    "Identity",
    "PolicyCommand",
    "PolicyStore",
    "RowPolicy",
    "RowPolicyViolation",
    "SYSTEM_IDENTITY",
    "bind_identity",
    "current_identity",
    "identity_scope",
    "policy_store",
    "register_row_policies",
]
