# backend/trustgate/api/deps.py
"""
Request dependencies: bearer token verification and service lookup.

Tokens are issued by the identity service. This service only verifies the
signature and reads the ``sub`` (user id) and ``is_admin`` claims.
"""

import logging
import uuid
from dataclasses import dataclass
from typing import Annotated

import jwt
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jwt.exceptions import ExpiredSignatureError, InvalidTokenError

from trustgate.core.config import settings
from trustgate.core.rate_limit import get_real_client_ip
from trustgate.core.security_logger import security_log
from trustgate.db.stores import UserRecord
from trustgate.services.registry import SecurityServices

logger = logging.getLogger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class TokenClaims:
    user_id: uuid.UUID
    is_admin: bool = False


def _unauthorized(detail: str = "Not authenticated") -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def decode_access_token(token: str) -> TokenClaims:
    """
    Verify a bearer token and extract its claims.

    Raises:
        ExpiredSignatureError: the token has expired.
        InvalidTokenError: bad signature, malformed token or missing/invalid ``sub``.
    """
    payload = jwt.decode(
        token,
        settings.SECRET_KEY,
        algorithms=[settings.ALGORITHM],
        options={"verify_aud": False, "require": ["sub"]},
    )
    try:
        user_id = uuid.UUID(str(payload["sub"]))
    except ValueError as e:
        raise InvalidTokenError("sub claim is not a UUID") from e
    return TokenClaims(user_id=user_id, is_admin=bool(payload.get("is_admin", False)))


def get_services(request: Request) -> SecurityServices:
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Security services are not initialized",
        )
    return services


async def get_token_claims(
    request: Request,
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(bearer_scheme)],
) -> TokenClaims:
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise _unauthorized()
    try:
        return decode_access_token(credentials.credentials)
    except ExpiredSignatureError:
        # Expired tokens are normal behaviour, not worth a security log line
        raise _unauthorized("Token has expired") from None
    except InvalidTokenError as e:
        security_log.bad_token(get_real_client_ip(request) or "unknown", type(e).__name__)
        raise _unauthorized("Invalid token") from None


async def get_current_user(
    claims: Annotated[TokenClaims, Depends(get_token_claims)],
    services: Annotated[SecurityServices, Depends(get_services)],
) -> UserRecord:
    user = await services.user_store.get(claims.user_id)
    if user is None:
        raise _unauthorized("Unknown user")
    if not user.is_active:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Inactive user")
    return user


async def require_admin(
    claims: Annotated[TokenClaims, Depends(get_token_claims)],
) -> TokenClaims:
    if not claims.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Administrator privileges required",
        )
    return claims


CurrentUser = Annotated[UserRecord, Depends(get_current_user)]
AdminClaims = Annotated[TokenClaims, Depends(require_admin)]
Services = Annotated[SecurityServices, Depends(get_services)]
