from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional
import secrets

from jose import JWTError, jwt
from pydantic import BaseModel
import structlog

from aspire.core.config import SecuritySettings

logger = structlog.get_logger(__name__)


class SecurityError(Exception):
    """Base exception for security-related errors"""
    pass


class SessionUser(BaseModel):
    """Authenticated caller extracted from a bearer token"""

    username: str
    role: str = "user"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


class JWTManager:
    """JWT token generation and validation"""

    def __init__(self, settings: SecuritySettings):
        self.settings = settings

    def create_access_token(
        self,
        username: str,
        role: str = "user",
        expires_delta: Optional[timedelta] = None,
    ) -> str:
        """Create a JWT access token"""
        now = datetime.now(timezone.utc)
        expire = now + (expires_delta or timedelta(minutes=self.settings.JWT_ACCESS_TOKEN_EXPIRE_MINUTES))

        to_encode = {
            "sub": username,
            "role": role,
            "exp": expire,
            "iat": now,
            "type": "access",
            "jti": secrets.token_hex(16),
        }

        try:
            encoded_jwt = jwt.encode(
                to_encode,
                self.settings.JWT_SECRET_KEY,
                algorithm=self.settings.JWT_ALGORITHM,
            )
        except JWTError as e:
            logger.error("Failed to create access token", error=str(e))
            raise SecurityError("Token creation failed") from e

        logger.debug("Access token created", expires_at=expire.isoformat())
        return encoded_jwt

    def decode_token(self, token: str) -> Dict[str, Any]:
        """Decode and validate a JWT token"""
        try:
            payload = jwt.decode(
                token,
                self.settings.JWT_SECRET_KEY,
                algorithms=[self.settings.JWT_ALGORITHM],
            )
        except JWTError as e:
            logger.warning("JWT validation failed", error=str(e))
            raise SecurityError("Invalid token") from e

        if payload.get("type") != "access":
            raise SecurityError("Invalid token type")
        return payload

    def user_from_token(self, token: str) -> SessionUser:
        payload = self.decode_token(token)
        username = payload.get("sub")
        if not username:
            raise SecurityError("Token has no subject")

        role = payload.get("role") or "user"
        if username in self.settings.ADMIN_USERNAMES:
            role = "admin"
        return SessionUser(username=username, role=role)


__all__ = [
    "SecurityError",
    "SessionUser",
    "JWTManager",
]
