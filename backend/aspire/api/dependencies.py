from typing import Optional
import secrets

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
import structlog

from aspire.core.config import Settings
from aspire.core.security import JWTManager, SecurityError, SessionUser
from aspire.services.case_service import CaseService

logger = structlog.get_logger(__name__)

# Initialize HTTP Bearer for JWT authentication
bearer_security = HTTPBearer(auto_error=False)


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_case_service(request: Request) -> CaseService:
    return request.app.state.case_service


def get_jwt_manager(request: Request) -> JWTManager:
    return request.app.state.jwt_manager


async def get_correlation_id(request: Request) -> str:
    """Correlation id set by the logging middleware, or taken from the request"""
    correlation_id = getattr(request.state, "correlation_id", None)
    if correlation_id:
        return correlation_id
    return request.headers.get("X-Correlation-ID") or f"req-{secrets.token_hex(8)}"


async def get_current_user_optional(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_security),
    jwt_manager: JWTManager = Depends(get_jwt_manager),
) -> Optional[SessionUser]:
    """Caller identity from a bearer token; None when absent or invalid"""
    if credentials is None:
        return None
    try:
        return jwt_manager.user_from_token(credentials.credentials)
    except SecurityError as e:
        logger.info("Ignoring invalid bearer token", error=str(e))
        return None


async def require_admin(
    current_user: Optional[SessionUser] = Depends(get_current_user_optional),
    correlation_id: str = Depends(get_correlation_id),
) -> SessionUser:
    if current_user is None or not current_user.is_admin:
        logger.warning(
            "Admin access denied",
            username=current_user.username if current_user else "anonymous",
            correlation_id=correlation_id,
        )
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"success": False, "error": "Forbidden - admin access required"},
        )
    return current_user


__all__ = [
    "get_app_settings",
    "get_case_service",
    "get_jwt_manager",
    "get_correlation_id",
    "get_current_user_optional",
    "require_admin",
]
