from __future__ import annotations

"""Authentication utilities: JWT handling and credential verification.

This module provides:
- JwtConfig, loaded from the environment
- token encode/decode helpers
- CredentialVerifier, used once per socket connection
- a FastAPI dependency resolving the caller of REST routes

Env vars:
- JWT_SECRET (required in prod; default for dev)
- JWT_EXPIRES_MIN (default 7 days)
- TUTORCHAT_USER_DIRECTORY_IMPL (`mongo` to re-check users on connect)
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol

import logging
import os

import jwt
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from ..domain.chat_models import Identity


logger = logging.getLogger("tutorchat.auth")
bearer_scheme = HTTPBearer(auto_error=False)


def _get_env(name: str, default: Optional[str] = None) -> str:
    val = os.getenv(name, default)
    if val is None:
        raise RuntimeError(f"Missing required environment variable: {name}")
    return val


@dataclass
class JwtConfig:
    secret: str
    algorithm: str = "HS256"
    expires_min: int = 7 * 24 * 60

    @staticmethod
    def from_env() -> "JwtConfig":
        secret = _get_env("JWT_SECRET", "dev-secret-change-me")
        expires = int(os.getenv("JWT_EXPIRES_MIN", str(7 * 24 * 60)))
        return JwtConfig(secret=secret, expires_min=expires)


def create_access_token(identity: Identity, cfg: Optional[JwtConfig] = None) -> str:
    cfg = cfg or JwtConfig.from_env()
    now = datetime.now(timezone.utc)
    exp = now + timedelta(minutes=cfg.expires_min)
    payload = {
        "userId": identity.user_id,
        "email": identity.email,
        "name": identity.name,
        "iat": int(now.timestamp()),
        "exp": int(exp.timestamp()),
    }
    return jwt.encode(payload, cfg.secret, algorithm=cfg.algorithm)


def decode_token(token: str, cfg: Optional[JwtConfig] = None) -> Optional[Identity]:
    """Return the identity carried by ``token``, or ``None`` when it is invalid."""
    cfg = cfg or JwtConfig.from_env()
    if not token:
        return None
    try:
        data = jwt.decode(token, cfg.secret, algorithms=[cfg.algorithm])
    except jwt.ExpiredSignatureError:
        logger.info("Rejected expired token")
        return None
    except jwt.InvalidTokenError:
        logger.info("Rejected invalid token")
        return None
    user_id = data.get("userId")
    email = data.get("email")
    if not user_id or not email:
        logger.info("Rejected token with incomplete payload")
        return None
    try:
        return Identity(user_id=int(user_id), email=str(email), name=data.get("name"))
    except (TypeError, ValueError):
        return None


class UserDirectory(Protocol):
    async def find_user(self, user_id: int) -> Optional[Identity]: ...


def get_user_directory() -> Optional[UserDirectory]:
    """User lookup for token verification, or None to trust the token claims.

    TUTORCHAT_USER_DIRECTORY_IMPL=mongo re-checks each token against the
    ``users`` collection; anything else skips the check.
    """
    impl = os.getenv("TUTORCHAT_USER_DIRECTORY_IMPL", "none").lower()
    if impl != "mongo":
        return None
    from ..infrastructure.directory_mongo import MongoUserDirectory

    return MongoUserDirectory.from_env()


class CredentialVerifier:
    """Resolve a bearer token to an Identity.

    With a user directory the token's user must still exist; the directory's
    record wins over the (possibly stale) claims in the token.
    """

    def __init__(self, cfg: Optional[JwtConfig] = None, users: Optional[UserDirectory] = None) -> None:
        self._cfg = cfg
        self._users = users

    async def verify(self, token: Optional[str]) -> Optional[Identity]:
        identity = decode_token(token or "", self._cfg)
        if identity is None or self._users is None:
            return identity
        try:
            record = await self._users.find_user(identity.user_id)
        except Exception:
            logger.exception("User lookup failed during token verification")
            return None
        if record is None or record.email.lower() != identity.email.lower():
            logger.info("Rejected token for unknown user", extra={"user_id": identity.user_id})
            return None
        return record


def bearer_token(raw: Optional[str]) -> Optional[str]:
    if not raw:
        return None
    scheme, _, token = raw.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


async def get_current_identity(
    request: Request,
    creds: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> Identity:
    """Resolve the caller of a REST route with the app's credential verifier."""
    if creds is None or not creds.scheme or creds.scheme.lower() != "bearer":
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing bearer token")
    verifier: CredentialVerifier = request.app.state.verifier
    identity = await verifier.verify(creds.credentials)
    if identity is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")
    return identity
