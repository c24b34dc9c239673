from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional
from jose import jwt
from passlib.context import CryptContext
import hashlib

pwd_context = CryptContext(
    schemes=["bcrypt"],
    deprecated="auto",
    bcrypt__ident="2b"
)


def _prepare_secret(secret: str) -> str:
    """
    bcrypt only looks at the first 72 bytes. Longer secrets are pre-hashed
    with SHA256 (64 hex chars) so no part of them is ignored.
    """
    secret_bytes = secret.encode('utf-8')
    if len(secret_bytes) > 72:
        return hashlib.sha256(secret_bytes).hexdigest()
    return secret


def verify_secret(plain_secret: str, hashed_secret: str) -> bool:
    """Verify secret against hash"""
    if not plain_secret or not hashed_secret:
        return False
    return pwd_context.verify(_prepare_secret(plain_secret), hashed_secret)


def hash_secret(secret: str) -> str:
    """Generate secret hash"""
    return pwd_context.hash(_prepare_secret(secret))


class AdminKeyVerifier:
    """Checks candidate keys against the configured admin secret.

    The secret is hashed once, on first use, and only the hash is kept.
    """

    def __init__(self, admin_secret: str):
        self._plain: Optional[str] = admin_secret or None
        self._hashed: Optional[str] = None

    @property
    def enabled(self) -> bool:
        return self._plain is not None or self._hashed is not None

    def _hash(self) -> Optional[str]:
        if self._hashed is None and self._plain is not None:
            self._hashed = hash_secret(self._plain)
            self._plain = None
        return self._hashed

    def verify(self, candidate: Optional[str]) -> bool:
        hashed = self._hash()
        if not hashed or not candidate:
            return False
        return verify_secret(candidate, hashed)


def create_access_token(
    data: dict,
    secret_key: str,
    algorithm: str = "HS256",
    expires_delta: Optional[timedelta] = None
) -> str:
    """Create JWT access token"""
    to_encode = data.copy()
    if expires_delta:
        expire = datetime.now(timezone.utc) + expires_delta
    else:
        expire = datetime.now(timezone.utc) + timedelta(minutes=15)

    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, secret_key, algorithm=algorithm)


def decode_access_token(token: str, secret_key: str, algorithm: str = "HS256") -> Dict[str, Any]:
    """Decode and validate a JWT; raises jose.JWTError when invalid or expired"""
    return jwt.decode(token, secret_key, algorithms=[algorithm])
