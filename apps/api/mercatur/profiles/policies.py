from __future__ import annotations

from mercatur.platform.security.policies import PolicyCommand, RowPolicy, authenticated, register_row_policies
from mercatur.profiles.models import UserProfile


register_row_policies(
    UserProfile,
    "profile",
    RowPolicy(PolicyCommand.SELECT, using=authenticated),
    RowPolicy(PolicyCommand.INSERT, with_check=lambda uid: UserProfile.id == uid),
    RowPolicy(PolicyCommand.UPDATE, using=lambda uid: UserProfile.id == uid),
)
