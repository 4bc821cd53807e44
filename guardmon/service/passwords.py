from __future__ import annotations

import base64
import hashlib
import hmac
import re
from typing import Iterable, Optional

from argon2 import PasswordHasher as Argon2Hasher
from argon2 import Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from guardmon.config import PasswordHashScheme
from guardmon.logging import get_logger
from guardmon.service.errors import ValidationError

logger = get_logger(__name__)

_ARGON2_PREFIX = "$argon2"
_UPPER = re.compile(r"[A-Z]")
_LOWER = re.compile(r"[a-z]")
_DIGIT = re.compile(r"\d")


def _sha256_digest(password: str) -> str:
    return base64.b64encode(hashlib.sha256(password.encode("utf-8")).digest()).decode("ascii")


def detect_scheme(digest: str) -> PasswordHashScheme:
    if digest.startswith(_ARGON2_PREFIX):
        return PasswordHashScheme.ARGON2ID
    return PasswordHashScheme.SHA256


class PasswordHasher:
    """Hash and verify account passwords.

    The configured scheme decides what ``hash`` produces; ``verify`` accepts
    either format so stored SHA-256 rows keep working after switching to
    argon2id.
    """

    def __init__(self, scheme: PasswordHashScheme = PasswordHashScheme.SHA256) -> None:
        self.scheme = PasswordHashScheme(scheme)
        self._argon2 = Argon2Hasher(type=Type.ID)
        if self.scheme == PasswordHashScheme.SHA256:
            logger.warning("password_hash_unsalted", scheme=self.scheme.value)

    def hash(self, password: str) -> str:
        if self.scheme == PasswordHashScheme.ARGON2ID:
            return self._argon2.hash(password)
        return _sha256_digest(password)

    def verify(self, password: str, digest: str) -> bool:
        if not isinstance(password, str) or not isinstance(digest, str) or not digest:
            return False
        if detect_scheme(digest) == PasswordHashScheme.ARGON2ID:
            try:
                return self._argon2.verify(digest, password)
            except (InvalidHash, VerifyMismatchError, VerificationError):
                return False
        return hmac.compare_digest(_sha256_digest(password), digest)

    def needs_rehash(self, digest: str) -> bool:
        if detect_scheme(digest) != self.scheme:
            return True
        if self.scheme == PasswordHashScheme.ARGON2ID:
            try:
                return self._argon2.check_needs_rehash(digest)
            except InvalidHash:
                return True
        return False

    def matches_any(self, password: str, digests: Iterable[str]) -> bool:
        return any(self.verify(password, digest) for digest in digests)


def validate_password_strength(
    password: Optional[str], *, min_length: int = 8, max_length: int = 128
) -> None:
    """Raise ``ValidationError`` unless the password meets the fixed character-class rule."""
    if not password or not isinstance(password, str):
        raise ValidationError("Password is required", detail={"field": "password"})
    if len(password) < min_length:
        raise ValidationError(
            f"Password must be at least {min_length} characters",
            detail={"field": "password"},
        )
    if len(password) > max_length:
        raise ValidationError(
            "Password too long",
            detail={"field": "password"},
        )
    if not (_UPPER.search(password) and _LOWER.search(password) and _DIGIT.search(password)):
        raise ValidationError(
            "Password must contain uppercase, lowercase, and number",
            detail={"field": "password"},
        )


_default_hasher: Optional[PasswordHasher] = None


def _get_default_hasher() -> PasswordHasher:
    global _default_hasher
    if _default_hasher is None:
        _default_hasher = PasswordHasher()
    return _default_hasher


def hash_password(password: str) -> str:
    return _get_default_hasher().hash(password)


def verify_password(password: str, digest: str) -> bool:
    return _get_default_hasher().verify(password, digest)
