"""
Session provider for the activity engine

Bearer tokens are HS256 JWTs carrying the user id, role and school. The
engine never stores sessions; each request resolves its token against the
users table so deactivated accounts lose access immediately.
"""

import os
import secrets
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt

from ..models import User, UserRole
from ..roles import parse_user_role
from .database import DatabaseService, get_db_service
from .settings_config_service import get_settings_service


@dataclass(frozen=True)
class AuthSession:
    """The authenticated caller of one request"""

    user_id: int
    role: UserRole
    school_id: Optional[int] = None


def _resolve_jwt_secret() -> str:
    env_secret = os.getenv("ACTIVITY_ENGINE_JWT_SECRET")
    if env_secret:
        return env_secret
    configured = get_settings_service().get("security", "jwt_secret", "")
    if configured:
        return configured
    # Process-local secret; tokens do not survive a restart.
    logging.getLogger(__name__).warning(
        "No JWT secret configured; generated an ephemeral one"
    )
    return secrets.token_urlsafe(32)


class SessionProvider:
    """Issues and validates bearer tokens"""

    def __init__(
        self,
        db_service: Optional[DatabaseService] = None,
        jwt_secret: Optional[str] = None,
        token_expiry_minutes: Optional[int] = None,
    ):
        self._db_service = db_service
        self.jwt_secret = jwt_secret or _resolve_jwt_secret()
        self.jwt_algorithm = "HS256"
        self.token_expiry_minutes = token_expiry_minutes or get_settings_service().getint(
            "security", "token_expiry_minutes", 60
        )
        self.logger = logging.getLogger(__name__)

    @property
    def db_service(self) -> DatabaseService:
        # Resolve lazily so a re-initialised database is picked up.
        return self._db_service or get_db_service()

    def issue_token(self, user: User) -> str:
        """Generate a JWT for the user"""
        now = datetime.now(timezone.utc)
        payload = {
            "user_id": user.id,
            "username": user.username,
            "role": user.role.value if user.role else "unknown",
            "school_id": user.school_id,
            "exp": now + timedelta(minutes=self.token_expiry_minutes),
            "iat": now,
        }
        return jwt.encode(payload, self.jwt_secret, algorithm=self.jwt_algorithm)

    def current_session(self, token: str) -> Optional[AuthSession]:
        """Validate a token. Returns None for anything that is not a live session."""
        if not token:
            return None
        try:
            payload = jwt.decode(
                token,
                self.jwt_secret,
                algorithms=[self.jwt_algorithm],
                options={"require": ["exp"]},
            )
        except jwt.ExpiredSignatureError:
            self.logger.debug("Rejected expired token")
            return None
        except jwt.InvalidTokenError:
            return None

        user_id = payload.get("user_id")
        if not user_id:
            return None

        with self.db_service.get_session() as session:
            user = session.get(User, user_id)
            if user is None or not user.active:
                return None
            role = parse_user_role(user.role)
            if role is None:
                return None
            return AuthSession(user_id=user.id, role=role, school_id=user.school_id)


# Global session provider instance
_session_provider: Optional[SessionProvider] = None


def get_session_provider() -> SessionProvider:
    """Get the global session provider instance"""
    global _session_provider
    if _session_provider is None:
        _session_provider = SessionProvider()
    return _session_provider


def reset_session_provider():
    global _session_provider
    _session_provider = None
