from __future__ import annotations

from dataclasses import dataclass, field

from taskflow.domain.models import AccountKind


@dataclass
class FakeUser:
    id: str
    home_department: str | None = None
    roles: set[str] = field(default_factory=set)
    is_active: bool = True


class FakeIdentityDirectory:
    def __init__(self, users: list[FakeUser] | None = None) -> None:
        self._users: dict[str, FakeUser] = {}
        for user in users or []:
            self.add(user)

    def add(self, user: FakeUser) -> FakeUser:
        self._users[user.id] = user
        return user

    def user_exists(self, user_id: str) -> bool:
        user = self._users.get(user_id)
        return user is not None and user.is_active

    def user_home_department(self, user_id: str) -> str | None:
        user = self._users.get(user_id)
        return user.home_department if user is not None else None

    def user_has_role(self, user_id: str, role: str) -> bool:
        user = self._users.get(user_id)
        return user is not None and user.is_active and role in user.roles


class FakeAccountDirectory:
    def __init__(self, accounts: set[tuple[AccountKind, str]] | None = None) -> None:
        self._accounts: set[tuple[AccountKind, str]] = set(accounts or set())

    def add(self, kind: AccountKind, account_id: str) -> None:
        self._accounts.add((kind, account_id))

    def account_exists(self, kind: AccountKind, account_id: str) -> bool:
        return (kind, account_id) in self._accounts
