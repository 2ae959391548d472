"""User store backed by SQLAlchemy.

The store is the only guard against duplicate identities: the UNIQUE
constraint on users.email decides races between concurrent first logins.
Every failed read or write surfaces as PersistenceError.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import Engine, create_engine, delete, func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from sso_portal.auth.errors import PersistenceError
from sso_portal.storage.models import Base, RevokedSession, Role, User

logger = logging.getLogger(__name__)

# Columns callers may change through update()
UPDATABLE_FIELDS = {
    "first_name",
    "last_name",
    "display_name",
    "is_active",
    "last_login_at",
    "sso_profile",
}


@dataclass(frozen=True)
class LocalIdentity:
    """Detached, read-only view of a users row."""

    id: int
    email: str
    first_name: str | None = None
    last_name: str | None = None
    display_name: str | None = None
    provider: str = "local"
    provider_id: str | None = None
    email_verified: bool = False
    is_active: bool = True
    roles: tuple[str, ...] = ()
    last_login_at: datetime | None = None
    sso_profile: dict[str, Any] | None = field(default=None, compare=False)

    @classmethod
    def from_row(cls, user: User) -> LocalIdentity:
        return cls(
            id=user.id,
            email=user.email,
            first_name=user.first_name,
            last_name=user.last_name,
            display_name=user.display_name,
            provider=user.provider,
            provider_id=user.provider_id,
            email_verified=user.email_verified,
            is_active=user.is_active,
            roles=tuple(role.name for role in user.roles),
            last_login_at=user.last_login_at,
            sso_profile=user.sso_profile,
        )

    def to_profile(self) -> dict[str, Any]:
        """JSON shape returned by GET /auth/me."""
        return {
            "id": self.id,
            "email": self.email,
            "firstName": self.first_name,
            "lastName": self.last_name,
            "displayName": self.display_name,
            "provider": self.provider,
            "providerId": self.provider_id,
            "emailVerified": self.email_verified,
            "isActive": self.is_active,
            "roles": list(self.roles),
            "lastLoginAt": self.last_login_at.isoformat() if self.last_login_at else None,
        }


def create_store_engine(database_url: str, echo: bool = False) -> Engine:
    """Create an engine. In-memory SQLite shares one connection across threads."""
    if database_url.startswith("sqlite"):
        kwargs: dict[str, Any] = {"connect_args": {"check_same_thread": False}}
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
        return create_engine(database_url, echo=echo, **kwargs)
    return create_engine(database_url, echo=echo, pool_pre_ping=True)


class UserStore:
    """Find-by-email / create / update for local identities, plus revoked sessions."""

    def __init__(self, engine: Engine) -> None:
        self._engine = engine
        self._session_factory: sessionmaker[Session] = sessionmaker(
            bind=engine, expire_on_commit=False
        )

    @classmethod
    def from_url(cls, database_url: str, echo: bool = False) -> UserStore:
        store = cls(create_store_engine(database_url, echo=echo))
        store.init_schema()
        return store

    def init_schema(self) -> None:
        Base.metadata.create_all(self._engine)

    def ensure_role(self, name: str) -> None:
        """Create a role if it does not exist yet. Called at startup for the default role."""
        try:
            with self._session_factory.begin() as session:
                if session.scalar(select(Role).where(Role.name == name)) is None:
                    session.add(Role(name=name))
                    logger.info(f"Created role '{name}'")
        except IntegrityError:
            # Another process created it first
            logger.debug(f"Role '{name}' already exists")

    def find_by_email(self, email: str) -> LocalIdentity | None:
        try:
            with self._session_factory() as session:
                user = session.scalar(select(User).where(User.email == email))
                return LocalIdentity.from_row(user) if user else None
        except SQLAlchemyError as e:
            raise PersistenceError(f"User lookup failed: {e}") from e

    def get(self, user_id: int) -> LocalIdentity | None:
        try:
            with self._session_factory() as session:
                user = session.get(User, user_id)
                return LocalIdentity.from_row(user) if user else None
        except SQLAlchemyError as e:
            raise PersistenceError(f"User {user_id} could not be loaded: {e}") from e

    def count(self) -> int:
        with self._session_factory() as session:
            return session.scalar(select(func.count()).select_from(User)) or 0

    def create(self, *, email: str, role: str, **fields: Any) -> LocalIdentity:
        """Insert a user and attach exactly one role in the same transaction."""
        try:
            with self._session_factory.begin() as session:
                role_row = session.scalar(select(Role).where(Role.name == role))
                if role_row is None:
                    role_row = Role(name=role)
                    session.add(role_row)

                user = User(email=email, **fields)
                user.roles.append(role_row)
                session.add(user)
                session.flush()
                identity = LocalIdentity.from_row(user)
        except IntegrityError as e:
            raise PersistenceError(f"User {email!r} could not be created: duplicate") from e
        except SQLAlchemyError as e:
            raise PersistenceError(f"User {email!r} could not be created: {e}") from e

        logger.info(f"Created user {identity.id} via provider '{identity.provider}'")
        return identity

    def update(self, user_id: int, **fields: Any) -> LocalIdentity:
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update fields: {sorted(unknown)}")
        try:
            with self._session_factory.begin() as session:
                user = session.get(User, user_id)
                if user is None:
                    raise PersistenceError(f"User {user_id} does not exist")
                for name, value in fields.items():
                    setattr(user, name, value)
                session.flush()
                return LocalIdentity.from_row(user)
        except SQLAlchemyError as e:
            raise PersistenceError(f"User {user_id} could not be updated: {e}") from e

    def revoke_session(self, sid: str, expires_at: datetime) -> None:
        now = datetime.now(timezone.utc)
        try:
            with self._session_factory.begin() as session:
                session.execute(delete(RevokedSession).where(RevokedSession.expires_at < now))
                session.merge(RevokedSession(sid=sid, expires_at=expires_at))
        except SQLAlchemyError as e:
            raise PersistenceError(f"Session could not be revoked: {e}") from e

    def is_session_revoked(self, sid: str) -> bool:
        try:
            with self._session_factory() as session:
                return session.get(RevokedSession, sid) is not None
        except SQLAlchemyError as e:
            raise PersistenceError(f"Revoked-session lookup failed: {e}") from e
