from __future__ import annotations

import hmac
import secrets
from typing import Protocol

from argon2 import Type
from argon2.low_level import hash_secret_raw


class PasswordHasher(Protocol):
    """One-way salted password hash. Hash and salt are always used together."""

    def generate_salt(self) -> str:
        ...

    def hash(self, plaintext: str, salt: str) -> str:
        ...

    def verify(self, plaintext: str, password_hash: str, salt: str) -> bool:
        ...


class Argon2Hasher:
    """Argon2id over an explicit per-credential salt, hex encoded."""

    algorithm = "argon2id"

    def __init__(
        self,
        *,
        time_cost: int = 2,
        memory_cost: int = 65536,
        parallelism: int = 1,
        hash_len: int = 32,
        salt_len: int = 16,
    ) -> None:
        self.time_cost = time_cost
        self.memory_cost = memory_cost
        self.parallelism = parallelism
        self.hash_len = hash_len
        self.salt_len = salt_len

    def generate_salt(self) -> str:
        return secrets.token_hex(self.salt_len)

    def hash(self, plaintext: str, salt: str) -> str:
        digest = hash_secret_raw(
            secret=plaintext.encode("utf-8"),
            salt=bytes.fromhex(salt),
            time_cost=self.time_cost,
            memory_cost=self.memory_cost,
            parallelism=self.parallelism,
            hash_len=self.hash_len,
            type=Type.ID,
        )
        return digest.hex()

    def verify(self, plaintext: str, password_hash: str, salt: str) -> bool:
        try:
            candidate = self.hash(plaintext, salt)
        except ValueError:
            # Malformed stored salt
            return False
        return hmac.compare_digest(candidate, password_hash)
