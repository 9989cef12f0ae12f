from __future__ import annotations

from typing import Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError

PASSWORD_ALGO = "argon2id"
MIN_PASSWORD_LENGTH = 10

# memory_cost is in KiB (64 MiB)
_hasher = PasswordHasher(
    time_cost=3,
    memory_cost=2**16,
    parallelism=1,
    type=Type.ID,
)


def hash_password(password: str) -> Tuple[str, str]:
    return _hasher.hash(password), PASSWORD_ALGO


def verify_password(password_hash: str, password: str) -> bool:
    try:
        return _hasher.verify(password_hash, password)
    except (InvalidHash, VerificationError):
        return False


def needs_rehash(password_hash: str) -> bool:
    try:
        return _hasher.check_needs_rehash(password_hash)
    except InvalidHash:
        return True
