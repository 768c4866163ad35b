"""
Authentication and authorization dependencies
"""

import hmac
import logging
from dataclasses import dataclass
from typing import Optional

import jwt
from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from ..errors import LoanServicingError
from ..system import LoanServicingSystem

logger = logging.getLogger("loan_servicing.api")

ADMIN_ROLE = "admin"

# JWT Security
security = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class CurrentUser:
    user_id: str
    role: str = "user"

    @property
    def is_admin(self) -> bool:
        return self.role == ADMIN_ROLE


def get_system(request: Request) -> LoanServicingSystem:
    return request.app.state.system


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    system: LoanServicingSystem = Depends(get_system)
) -> CurrentUser:
    """Dependency that validates the JWT and returns the current user"""
    config = system.config
    if not config.auth_enabled:
        return CurrentUser("test_user", ADMIN_ROLE)  # For tests when auth is disabled

    if not credentials:
        raise HTTPException(status_code=401, detail="Not authenticated")
    try:
        payload = jwt.decode(credentials.credentials, config.jwt_secret, algorithms=[config.jwt_algorithm])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")

    user_id = payload.get("sub")
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid token")
    return CurrentUser(user_id, payload.get("role", "user"))


def require_admin(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    if not user.is_admin:
        raise HTTPException(status_code=403, detail="Admin access required")
    return user


def verify_cron_secret(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    system: LoanServicingSystem = Depends(get_system)
) -> None:
    """Cron endpoints take ``Authorization: Bearer <cron_secret>``"""
    secret = system.config.cron_secret
    if not secret:
        logger.warning("Cron secret not configured, cron endpoints are open")
        return
    if not credentials or not hmac.compare_digest(credentials.credentials, secret):
        raise HTTPException(status_code=401, detail="Unauthorized")


def to_http_exception(error: LoanServicingError) -> HTTPException:
    """Map an engine error to the HTTP status its class declares"""
    if error.status_code >= 500:
        logger.error(f"Request failed: {error}")
    return HTTPException(status_code=error.status_code, detail=error.to_dict())
