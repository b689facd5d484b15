"""Password hashing, session tokens and request authentication."""
from __future__ import annotations

import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import anyio
from fastapi import HTTPException, Request, status
from fastapi.security import APIKeyHeader, HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from passlib.context import CryptContext

from .models import TokenClaims

logger = logging.getLogger("quotagate.security")

TOKEN_ALGORITHM = "HS256"
DEFAULT_TOKEN_TTL = timedelta(days=7)
DEFAULT_BCRYPT_ROUNDS = 10
ADMIN_SECRET_HEADER = "X-Admin-Password"


class CredentialManager:
    """Stateless credential helper bound to a signing secret and an admin secret."""

    def __init__(
        self,
        *,
        signing_secret: str,
        admin_secret: str,
        token_ttl: timedelta = DEFAULT_TOKEN_TTL,
        bcrypt_rounds: int = DEFAULT_BCRYPT_ROUNDS,
    ) -> None:
        if not signing_secret:
            raise ValueError("A token signing secret must be provided")
        if not admin_secret:
            raise ValueError("An admin secret must be provided")
        self._signing_secret = signing_secret
        self._admin_secret = admin_secret.encode("utf-8")
        self._token_ttl = token_ttl
        self._pwd_context = CryptContext(
            schemes=["bcrypt"],
            deprecated="auto",
            bcrypt__rounds=bcrypt_rounds,
        )

    @property
    def token_ttl(self) -> timedelta:
        return self._token_ttl

    # ------------------------------------------------------------------
    # Passwords
    # ------------------------------------------------------------------
    def hash_password(self, password: str) -> str:
        return self._pwd_context.hash(password)

    def verify_password(self, password: str, hashed: str) -> bool:
        if not hashed:
            return False
        try:
            return self._pwd_context.verify(password, hashed)
        except (ValueError, TypeError):
            logger.warning("Stored password hash could not be parsed")
            return False

    async def hash_password_async(self, password: str) -> str:
        return await anyio.to_thread.run_sync(self.hash_password, password)

    async def verify_password_async(self, password: str, hashed: str) -> bool:
        return await anyio.to_thread.run_sync(self.verify_password, password, hashed)

    # ------------------------------------------------------------------
    # Session tokens
    # ------------------------------------------------------------------
    def issue_token(self, user_id: str, email: str, *, now: Optional[datetime] = None) -> str:
        issued_at = now or datetime.now(timezone.utc)
        claims: Dict[str, Any] = {
            "id": user_id,
            "email": email,
            "iat": int(issued_at.timestamp()),
            "exp": int((issued_at + self._token_ttl).timestamp()),
        }
        return jwt.encode(claims, self._signing_secret, algorithm=TOKEN_ALGORITHM)

    def verify_token(self, token: str) -> Optional[TokenClaims]:
        """Return the token's claims, or ``None`` for any kind of invalid token."""

        try:
            payload = jwt.decode(token, self._signing_secret, algorithms=[TOKEN_ALGORITHM])
        except JWTError as exc:
            logger.debug("Rejected session token: %s", exc)
            return None

        user_id = payload.get("id")
        email = payload.get("email")
        issued = payload.get("iat")
        expires = payload.get("exp")
        if not isinstance(user_id, str) or not isinstance(email, str):
            logger.debug("Rejected session token: identity claims missing")
            return None
        if not isinstance(issued, (int, float)) or not isinstance(expires, (int, float)):
            logger.debug("Rejected session token: timing claims missing")
            return None

        return TokenClaims(
            user_id=user_id,
            email=email,
            issued_at=datetime.fromtimestamp(issued, tz=timezone.utc),
            expires_at=datetime.fromtimestamp(expires, tz=timezone.utc),
        )

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------
    def verify_admin_secret(self, provided: Optional[str]) -> bool:
        if not provided:
            return False
        return secrets.compare_digest(provided.encode("utf-8"), self._admin_secret)


class BearerAuth:
    """Resolve the ``Authorization: Bearer`` header into verified token claims."""

    def __init__(self, credentials: CredentialManager) -> None:
        self._credentials = credentials
        self._bearer = HTTPBearer(auto_error=False)

    async def __call__(self, request: Request) -> TokenClaims:
        header: HTTPAuthorizationCredentials | None = await self._bearer(request)  # type: ignore[assignment]
        if header is None or header.scheme.lower() != "bearer":
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Missing authentication token",
            )

        claims = self._credentials.verify_token(header.credentials)
        if claims is None:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid authentication token",
            )
        return claims


class AdminSecretAuth:
    """Require the shared administrator secret in the ``X-Admin-Password`` header."""

    def __init__(self, credentials: CredentialManager) -> None:
        self._credentials = credentials
        self._header = APIKeyHeader(name=ADMIN_SECRET_HEADER, auto_error=False)

    async def __call__(self, request: Request) -> None:
        provided = await self._header(request)
        if not self._credentials.verify_admin_secret(provided):
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid admin password")
        return None


__all__ = [
    "ADMIN_SECRET_HEADER",
    "AdminSecretAuth",
    "BearerAuth",
    "CredentialManager",
    "DEFAULT_TOKEN_TTL",
]
