from dataclasses import dataclass
import logging
from typing import Optional

from fastapi import Cookie, Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from campaign_ingest.auth.clerk import verify_session_token


bearer_scheme = HTTPBearer(auto_error=False)
logger = logging.getLogger("auth.deps")

SESSION_COOKIE_NAME = "__session"


@dataclass
class AuthContext:
    user_id: str


def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(bearer_scheme),
    session_cookie: Optional[str] = Cookie(default=None, alias=SESSION_COOKIE_NAME),
) -> AuthContext:
    token = credentials.credentials if credentials and credentials.credentials else session_cookie
    if not token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")

    claims = verify_session_token(token)
    user_id = claims.get("sub")
    if not user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token claims")

    logger.debug("AuthContext built", extra={"sub": user_id})
    return AuthContext(user_id=str(user_id))
