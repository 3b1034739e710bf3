from __future__ import annotations

import asyncio
from typing import Optional, Tuple

from argon2 import PasswordHasher as Argon2Hasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from taskgate.config import Settings
from taskgate.logging import get_logger
from taskgate.service.errors import ServerError

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"


class PasswordHasher:
    """argon2id hashing with a configurable work factor.

    The sync methods are CPU bound; request handlers use the ``*_async``
    variants, which run in a worker thread under ``request_timeout_seconds``.
    A timeout surfaces as a server error rather than a failed login.
    """

    def __init__(self, settings: Settings) -> None:
        self.timeout_seconds = settings.request_timeout_seconds
        self._hasher = Argon2Hasher(
            time_cost=settings.password_hash_time_cost,
            memory_cost=settings.password_hash_memory_cost,
            parallelism=settings.password_hash_parallelism,
            type=Type.ID,
        )

    def hash(self, password: str) -> Tuple[str, str]:
        return self._hasher.hash(password), PASSWORD_ALGO

    def verify(self, password: str, digest: Optional[str], algo: str = PASSWORD_ALGO) -> bool:
        if not digest:
            return False
        if algo != PASSWORD_ALGO:
            logger.warning("password_algo_mismatch", algo=algo)
            return False
        try:
            return self._hasher.verify(digest, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    def needs_rehash(self, digest: str) -> bool:
        try:
            return self._hasher.check_needs_rehash(digest)
        except InvalidHash:
            return True

    async def _run(self, func, *args):
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(func, *args), timeout=self.timeout_seconds
            )
        except asyncio.TimeoutError as exc:
            logger.error("password_hash_timeout", timeout_seconds=self.timeout_seconds)
            raise ServerError("Password hashing timed out") from exc

    async def hash_async(self, password: str) -> Tuple[str, str]:
        return await self._run(self.hash, password)

    async def verify_async(
        self, password: str, digest: Optional[str], algo: str = PASSWORD_ALGO
    ) -> bool:
        return await self._run(self.verify, password, digest, algo)
