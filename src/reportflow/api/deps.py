from __future__ import annotations

import uuid

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy import select
from sqlalchemy.orm import Session

from reportflow.core.db import db_session
from reportflow.core.logging import get_logger, log_event, set_user_context
from reportflow.core.security import decode_access_token
from reportflow.modules.identity.models import REVIEWER_ROLES, User, UserRole
from reportflow.modules.reports.models import Report
from reportflow.modules.reports.service import get_report_for_user

bearer_scheme = HTTPBearer(auto_error=False)
logger = get_logger(__name__)


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    session: Session = Depends(db_session),
) -> User:
    token = credentials.credentials if credentials else None
    if not token:
        raise _unauthorized("Not authenticated")

    claims = decode_access_token(token)
    if claims is None:
        raise _unauthorized("Invalid token")

    try:
        user_id = uuid.UUID(claims.subject)
    except ValueError as e:
        raise _unauthorized("Invalid token") from e

    user = session.scalar(select(User).where(User.id == user_id))
    if not user or not user.is_active:
        raise _unauthorized("Invalid user")
    # A role change invalidates tokens issued under the old role.
    if claims.role is not None and claims.role != user.role.value:
        log_event(
            logger,
            "auth.token.stale_role",
            token_role=claims.role,
            current_role=user.role.value,
            target_user_id=str(user.id),
        )
        raise _unauthorized("Token role is out of date; sign in again")
    set_user_context(str(user.id), role=user.role.value)
    return user


def require_role(*roles: UserRole):
    def _checker(user: User = Depends(get_current_user)) -> User:
        if user.role not in roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN, detail="Insufficient permissions"
            )
        return user

    return _checker


require_reviewer = require_role(*REVIEWER_ROLES)


def accessible_report(
    report_id: uuid.UUID,
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
) -> Report:
    """The path's report, if the caller owns it or reviews reports."""
    return get_report_for_user(session, report_id=report_id, user=user)
