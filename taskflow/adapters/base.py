from __future__ import annotations

from typing import Protocol

from taskflow.domain.models import AccountKind


class IdentityDirectory(Protocol):
    def user_exists(self, user_id: str) -> bool: ...

    def user_home_department(self, user_id: str) -> str | None: ...

    def user_has_role(self, user_id: str, role: str) -> bool: ...


class AccountDirectory(Protocol):
    def account_exists(self, kind: AccountKind, account_id: str) -> bool: ...
