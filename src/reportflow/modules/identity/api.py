from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends
from fastapi.security import OAuth2PasswordRequestForm
from sqlalchemy.orm import Session

from reportflow.api.deps import get_current_user, require_role
from reportflow.core.config import settings
from reportflow.core.db import db_session
from reportflow.core.security import create_access_token
from reportflow.modules.identity.models import User, UserRole
from reportflow.modules.identity.schemas import (
    PasswordResetOut,
    TokenOut,
    UserCreate,
    UserOut,
    UserRoleUpdate,
    UserStatusUpdate,
)
from reportflow.modules.identity.service import (
    authenticate_user,
    create_user,
    list_users,
    reset_password,
    set_user_active,
    set_user_role,
)

router = APIRouter(tags=["identity"])


@router.post("/auth/token", response_model=TokenOut)
def login(
    form_data: OAuth2PasswordRequestForm = Depends(),
    session: Session = Depends(db_session),
) -> TokenOut:
    user = authenticate_user(session, email=form_data.username, password=form_data.password)
    return TokenOut(
        access_token=create_access_token(subject=str(user.id), role=user.role.value),
        expires_in=settings.access_token_exp_minutes * 60,
        user_id=user.id,
        role=user.role,
    )


@router.get("/auth/me", response_model=UserOut)
def me(user: User = Depends(get_current_user)) -> UserOut:
    return UserOut.model_validate(user, from_attributes=True)


@router.post("/users", response_model=UserOut)
def create_user_endpoint(
    payload: UserCreate,
    session: Session = Depends(db_session),
    _: User = Depends(require_role(UserRole.ADMIN)),
) -> UserOut:
    user = create_user(
        session,
        email=str(payload.email),
        password=payload.password,
        role=payload.role,
        full_name=payload.full_name,
    )
    return UserOut.model_validate(user, from_attributes=True)


@router.get("/users", response_model=list[UserOut])
def list_users_endpoint(
    role: UserRole | None = None,
    session: Session = Depends(db_session),
    _: User = Depends(require_role(UserRole.ADMIN)),
) -> list[UserOut]:
    return [UserOut.model_validate(u, from_attributes=True) for u in list_users(session, role=role)]


@router.patch("/users/{user_id}/status", response_model=UserOut)
def update_user_status_endpoint(
    user_id: uuid.UUID,
    payload: UserStatusUpdate,
    session: Session = Depends(db_session),
    admin: User = Depends(require_role(UserRole.ADMIN)),
) -> UserOut:
    user = set_user_active(session, user_id=user_id, is_active=payload.is_active, actor=admin)
    return UserOut.model_validate(user, from_attributes=True)


@router.patch("/users/{user_id}/role", response_model=UserOut)
def update_user_role_endpoint(
    user_id: uuid.UUID,
    payload: UserRoleUpdate,
    session: Session = Depends(db_session),
    admin: User = Depends(require_role(UserRole.ADMIN)),
) -> UserOut:
    user = set_user_role(session, user_id=user_id, role=payload.role, actor=admin)
    return UserOut.model_validate(user, from_attributes=True)


@router.post("/users/{user_id}/reset-password", response_model=PasswordResetOut)
def reset_password_endpoint(
    user_id: uuid.UUID,
    session: Session = Depends(db_session),
    admin: User = Depends(require_role(UserRole.ADMIN)),
) -> PasswordResetOut:
    user, temporary_password = reset_password(session, user_id=user_id, actor=admin)
    return PasswordResetOut(user_id=user.id, temporary_password=temporary_password)
