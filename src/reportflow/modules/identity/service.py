from __future__ import annotations

import secrets
import uuid

from fastapi import HTTPException, status
from sqlalchemy import select
from sqlalchemy.orm import Session

from reportflow.core.logging import get_logger, log_event
from reportflow.core.security import hash_password, verify_password
from reportflow.modules.identity.models import REVIEWER_ROLES, User, UserRole

logger = get_logger(__name__)


def get_user_by_email(session: Session, *, email: str) -> User | None:
    return session.scalar(select(User).where(User.email == email.lower()))


def create_user(
    session: Session,
    *,
    email: str,
    password: str,
    role: UserRole,
    full_name: str | None = None,
) -> User:
    if get_user_by_email(session, email=email):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Email already exists")

    user = User(
        email=email.lower(),
        full_name=full_name,
        password_hash=hash_password(password),
        role=role,
        is_active=True,
    )
    session.add(user)
    session.commit()
    session.refresh(user)
    log_event(logger, "identity.user.created", created_user_id=str(user.id), role=role.value)
    return user


def authenticate_user(session: Session, *, email: str, password: str) -> User:
    user = get_user_by_email(session, email=email)
    if not user or not user.is_active or not verify_password(password, user.password_hash):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid credentials")
    return user


def list_users(session: Session, *, role: UserRole | None = None) -> list[User]:
    q = select(User).order_by(User.email.asc())
    if role is not None:
        q = q.where(User.role == role)
    return list(session.scalars(q))


def set_user_active(session: Session, *, user_id: uuid.UUID, is_active: bool, actor: User) -> User:
    user = session.scalar(select(User).where(User.id == user_id))
    if not user:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    if user.id == actor.id and not is_active:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="You cannot deactivate yourself"
        )
    user.is_active = is_active
    session.add(user)
    session.commit()
    session.refresh(user)
    log_event(
        logger,
        "identity.user.status_changed",
        target_user_id=str(user.id),
        is_active=is_active,
    )
    return user


def list_reviewers(session: Session) -> list[User]:
    """Active managers and admins: the pool notified about new submissions and proofs."""
    return list(
        session.scalars(
            select(User)
            .where(User.role.in_(REVIEWER_ROLES), User.is_active.is_(True))
            .order_by(User.email.asc())
        )
    )


def set_user_role(session: Session, *, user_id: uuid.UUID, role: UserRole, actor: User) -> User:
    """Change a user's role. Tokens issued under the previous role stop working."""
    user = session.scalar(select(User).where(User.id == user_id))
    if not user:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    if user.id == actor.id and role != UserRole.ADMIN:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="You cannot demote yourself"
        )
    previous = user.role
    user.role = role
    session.add(user)
    session.commit()
    session.refresh(user)
    log_event(
        logger,
        "identity.user.role_changed",
        target_user_id=str(user.id),
        previous_role=previous.value,
        role=role.value,
    )
    return user


def reset_password(session: Session, *, user_id: uuid.UUID, actor: User) -> tuple[User, str]:
    """Replace the user's password with a generated one and return it once."""
    user = session.scalar(select(User).where(User.id == user_id))
    if not user:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    temporary_password = secrets.token_urlsafe(12)
    user.password_hash = hash_password(temporary_password)
    session.add(user)
    session.commit()
    session.refresh(user)
    log_event(
        logger,
        "identity.user.password_reset",
        target_user_id=str(user.id),
        actor_user_id=str(actor.id),
    )
    return user, temporary_password
