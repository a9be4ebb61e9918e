from __future__ import annotations

import base64
import hashlib
import hmac
import os
import re
from dataclasses import dataclass
from typing import Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from linkhub.logging import get_logger

logger = get_logger(__name__)

ARGON2_ALGO = "argon2id"
# Accounts imported from the previous backend carry salted PBKDF2 hashes
PBKDF2_ALGO = "pbkdf2_sha256"
PBKDF2_ITERATIONS = 100_000

MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 128

_HAS_LETTER = re.compile(r"[A-Za-z]")
_HAS_DIGIT = re.compile(r"\d")


def check_password_strength(value: str) -> str:
    """Raise ValueError unless the password meets the signup rules."""
    if len(value) < MIN_PASSWORD_LENGTH:
        raise ValueError(f"password must be at least {MIN_PASSWORD_LENGTH} characters")
    if len(value) > MAX_PASSWORD_LENGTH:
        raise ValueError(f"password must be at most {MAX_PASSWORD_LENGTH} characters")
    if not _HAS_LETTER.search(value) or not _HAS_DIGIT.search(value):
        raise ValueError("password must contain at least one letter and one digit")
    return value


@dataclass(frozen=True)
class PasswordRecord:
    password_hash: str
    password_algo: str
    password_salt: Optional[str] = None


def pbkdf2_hash(password: str, salt: str, iterations: int = PBKDF2_ITERATIONS) -> str:
    digest = hashlib.pbkdf2_hmac(
        "sha256", password.encode("utf-8"), base64.b64decode(salt), iterations
    )
    return base64.b64encode(digest).decode("ascii")


class CredentialVerifier:
    """Hashes and checks passwords without logging or timing-leaking them.

    Callers own audit logging and the uniform "invalid credentials" message;
    this class only ever answers yes or no.
    """

    def __init__(self, hasher: Optional[PasswordHasher] = None) -> None:
        self._hasher = hasher or PasswordHasher(type=Type.ID)
        # Checked against when the account does not exist so both paths cost the same
        self._dummy_hash = self._hasher.hash(os.urandom(16).hex())

    def hash_password(self, password: str) -> PasswordRecord:
        return PasswordRecord(password_hash=self._hasher.hash(password), password_algo=ARGON2_ALGO)

    def verify(
        self,
        password: str,
        stored_hash: str,
        salt: Optional[str] = None,
        algo: str = ARGON2_ALGO,
    ) -> bool:
        if algo == ARGON2_ALGO:
            try:
                return self._hasher.verify(stored_hash, password)
            except VerifyMismatchError:
                return False
            except (InvalidHash, VerificationError):
                logger.warning("password_hash_unreadable", algo=algo)
                return False
        if algo == PBKDF2_ALGO:
            if not salt:
                logger.warning("password_salt_missing", algo=algo)
                return False
            try:
                candidate = pbkdf2_hash(password, salt)
            except (ValueError, TypeError):
                logger.warning("password_salt_unreadable", algo=algo)
                return False
            return hmac.compare_digest(candidate, stored_hash)
        logger.warning("password_algo_unknown", algo=algo)
        return False

    def burn(self, password: str) -> None:
        """Spend one verification worth of time against a throwaway hash."""
        self.verify(password, self._dummy_hash)

    def needs_rehash(self, stored_hash: str, algo: str) -> bool:
        if algo != ARGON2_ALGO:
            return True
        try:
            return self._hasher.check_needs_rehash(stored_hash)
        except InvalidHash:
            return True
