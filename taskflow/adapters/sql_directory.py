from __future__ import annotations

from sqlmodel import Session, select

from taskflow.domain.models import Account, AccountKind, DirectoryUser, DirectoryUserRole
from taskflow.infra.db import get_engine


class SqlIdentityDirectory:
    """Reads the identity tables maintained by the identity provider sync."""

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def _find_active_user(self, session: Session, user_id: str) -> DirectoryUser | None:
        row = session.exec(select(DirectoryUser).where(DirectoryUser.id == user_id)).first()
        if row is None or not row.is_active:
            return None
        return row

    def user_exists(self, user_id: str) -> bool:
        with self._session() as session:
            return self._find_active_user(session, user_id) is not None

    def user_home_department(self, user_id: str) -> str | None:
        with self._session() as session:
            row = self._find_active_user(session, user_id)
            return row.home_department if row is not None else None

    def user_has_role(self, user_id: str, role: str) -> bool:
        with self._session() as session:
            if self._find_active_user(session, user_id) is None:
                return False
            row = session.exec(
                select(DirectoryUserRole)
                .where(DirectoryUserRole.user_id == user_id)
                .where(DirectoryUserRole.role == role)
            ).first()
            return row is not None


class SqlAccountDirectory:
    def account_exists(self, kind: AccountKind, account_id: str) -> bool:
        with Session(get_engine()) as session:
            row = session.exec(
                select(Account)
                .where(Account.kind == kind)
                .where(Account.id == account_id)
            ).first()
            return row is not None
