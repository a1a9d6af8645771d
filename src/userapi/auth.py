import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import jwt
import pydantic
from fastapi import Depends, Request
from fastapi.security import APIKeyCookie

from .config import Settings
from .errors import AuthenticationError, AuthorizationError
from .schemas import Identity

logger = logging.getLogger(__name__)

TOKEN_COOKIE = "token"

token_cookie = APIKeyCookie(name=TOKEN_COOKIE, auto_error=False)


def create_access_token(
    identity: Identity, settings: Settings, expires_in: Optional[timedelta] = None
) -> str:
    if expires_in is None:
        expires_in = timedelta(minutes=settings.access_token_expire_minutes)
    payload = {
        "id": identity.id,
        "email": identity.email,
        "role": identity.role.value,
        "exp": datetime.now(timezone.utc) + expires_in,
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_token(token: Optional[str], settings: Settings) -> Identity:
    """Verify a token and return the identity it carries.

    Every failure raises the same :class:`AuthenticationError` so callers
    cannot tell a missing token from a forged or expired one.
    """
    if not token:
        raise AuthenticationError()
    try:
        payload: Dict[str, Any] = jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=[settings.jwt_algorithm],
            options={"require": ["exp"]},
        )
        return Identity(id=payload["id"], email=payload["email"], role=payload["role"])
    except (jwt.PyJWTError, KeyError, pydantic.ValidationError) as exc:
        logger.info("token rejected: %s", exc.__class__.__name__)
        raise AuthenticationError() from exc


def get_current_identity(
    request: Request, token: Optional[str] = Depends(token_cookie)
) -> Identity:
    identity = decode_token(token, request.app.state.settings)
    request.state.identity = identity
    logger.info("user authenticated: %s (%s)", identity.email, identity.role.value)
    return identity


def require_admin(
    request: Request, identity: Identity = Depends(get_current_identity)
) -> Identity:
    if not identity.is_admin:
        logger.warning(
            "non-admin user %s (%s) attempted admin operation on %s",
            identity.email,
            identity.role.value,
            request.url.path,
        )
        raise AuthorizationError("Admin privileges required")
    logger.info(
        "admin access granted to %s for %s %s",
        identity.email,
        request.method,
        request.url.path,
    )
    return identity


def authorize_update(actor: Identity, target_id: int, fields: Dict[str, Any]) -> None:
    """Owners may edit themselves; only admins edit others or change roles."""
    if actor.id != target_id and not actor.is_admin:
        logger.warning("user %s denied update of user %s", actor.id, target_id)
        raise AuthorizationError("You can only update your own information")
    if "role" in fields and not actor.is_admin:
        logger.warning("user %s denied role change on user %s", actor.id, target_id)
        raise AuthorizationError("Only administrators can change user roles")
