"""
Credential handling: bcrypt password hashes, JWT access/refresh tokens and
signed password-reset tokens.

The request-facing pieces (`current_user`, `require_role`) live here as well so
handlers can compose authentication and role checks explicitly.
"""
from __future__ import annotations

import hashlib
from datetime import timedelta
from typing import Optional

import bcrypt
from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer
from jose import jwt
from jose.exceptions import ExpiredSignatureError, JWTError
from sqlalchemy.orm import Session

from .config import Settings
from .db import get_db
from .errors import Forbidden, Unauthorized
from .models import User, new_id, utcnow


class PasswordHasher:
    def __init__(self, rounds: int = 10):
        self.rounds = rounds

    def hash(self, raw_password: str) -> str:
        hashed = bcrypt.hashpw(raw_password.encode("utf-8"), bcrypt.gensalt(rounds=self.rounds))
        return hashed.decode("utf-8")

    def verify(self, raw_password: str, stored_hash: Optional[str]) -> bool:
        if not raw_password or not stored_hash:
            return False
        try:
            return bcrypt.checkpw(raw_password.encode("utf-8"), stored_hash.encode("utf-8"))
        except ValueError:
            return False


def fingerprint(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class TokenIssuer:
    def __init__(self, settings: Settings):
        self.secret = settings.jwt_secret
        self.algorithm = settings.jwt_algorithm
        self.access_ttl = timedelta(minutes=settings.access_token_minutes)
        self.refresh_ttl = timedelta(days=settings.refresh_token_days)

    def _encode(self, claims: dict, ttl: timedelta) -> str:
        now = utcnow()
        payload = {**claims, "iat": now, "exp": now + ttl}
        return jwt.encode(payload, self.secret, algorithm=self.algorithm)

    def access_token(self, user: User) -> str:
        return self._encode({"sub": user.id, "rol": user.role, "type": "access"}, self.access_ttl)

    def refresh_token(self, user: User) -> str:
        # jti keeps two refresh tokens minted in the same second distinct
        return self._encode({"sub": user.id, "type": "refresh", "jti": new_id()}, self.refresh_ttl)

    def decode(self, token: str, expected_type: str) -> dict:
        try:
            claims = jwt.decode(token, self.secret, algorithms=[self.algorithm])
        except ExpiredSignatureError as exc:
            raise Unauthorized("Token expired") from exc
        except JWTError as exc:
            raise Unauthorized("Invalid token") from exc
        if claims.get("type") != expected_type or not claims.get("sub"):
            raise Unauthorized("Invalid token")
        return claims


class ResetTokens:
    def __init__(self, settings: Settings):
        self.serializer = URLSafeTimedSerializer(settings.jwt_secret, salt="algoritmia-password-reset")
        self.max_age = settings.reset_token_minutes * 60

    def issue(self, user: User) -> str:
        # the hash fragment invalidates the token once the password changes
        return self.serializer.dumps({"sub": user.id, "pw": user.password_hash[-12:]})

    def load(self, token: str) -> dict:
        try:
            return self.serializer.loads(token, max_age=self.max_age)
        except SignatureExpired as exc:
            raise Unauthorized("Reset token expired") from exc
        except BadSignature as exc:
            raise Unauthorized("Invalid reset token") from exc


bearer = HTTPBearer(auto_error=False)


def current_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer),
    db: Session = Depends(get_db),
) -> User:
    if not credentials or credentials.scheme.lower() != "bearer":
        raise Unauthorized("Missing bearer token")
    claims = request.app.state.services.tokens.decode(credentials.credentials, "access")
    user = db.get(User, claims["sub"])
    if not user or user.deleted_at is not None:
        raise Unauthorized("Invalid user")
    return user


def require_role(user: User, *roles: str) -> User:
    if user.role not in roles:
        raise Forbidden(f"{' or '.join(roles)} role required")
    return user
