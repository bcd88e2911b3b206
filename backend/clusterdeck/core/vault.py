"""
Encrypted key/value store for credential material.

Values are Fernet tokens under a random data key. The data key is stored
wrapped by a key derived from the master key, so the vault has to be
initialized once and then unsealed with the same master key in every process
before it serves reads or writes.

Every operation runs in its own database transaction. Nothing spans calls;
callers sequence and compensate.
"""

from __future__ import annotations

import asyncio
import base64
import os
from typing import Optional

import structlog
from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from clusterdeck.core.errors import ConflictError, NotFoundError, VaultSealedError
from clusterdeck.models.secret_entry import SecretEntry, VaultKeyring

logger = structlog.get_logger(__name__)

_KEYRING_ID = 1


def _master_fernet(master_key: str, salt: bytes, iterations: int) -> Fernet:
    kdf = PBKDF2HMAC(algorithm=hashes.SHA256(), length=32, salt=salt, iterations=iterations)
    return Fernet(base64.urlsafe_b64encode(kdf.derive(master_key.encode("utf-8"))))


class SecretVault:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        kdf_iterations: int = 390_000,
    ) -> None:
        self._session_factory = session_factory
        self._kdf_iterations = kdf_iterations
        self._fernet: Optional[Fernet] = None

    @property
    def sealed(self) -> bool:
        return self._fernet is None

    async def initialize(self, master_key: str) -> bool:
        """Create the keyring. Returns False when it already existed."""
        async with self._session_factory() as session:
            existing = await session.get(VaultKeyring, _KEYRING_ID)
            if existing is not None:
                logger.info("vault.already_initialized")
                return False

            salt = os.urandom(16)
            wrapper = await asyncio.to_thread(_master_fernet, master_key, salt, self._kdf_iterations)
            wrapped = wrapper.encrypt(Fernet.generate_key()).decode()
            session.add(VaultKeyring(id=_KEYRING_ID, salt=salt, wrapped_key=wrapped))
            try:
                await session.commit()
            except IntegrityError:
                # another process initialized it first
                await session.rollback()
                logger.info("vault.already_initialized")
                return False
        logger.info("vault.initialized")
        return True

    async def unseal(self, master_key: str) -> None:
        async with self._session_factory() as session:
            keyring = await session.get(VaultKeyring, _KEYRING_ID)
        if keyring is None:
            raise VaultSealedError("Secret vault is not initialized")

        wrapper = await asyncio.to_thread(_master_fernet, master_key, keyring.salt, self._kdf_iterations)
        try:
            data_key = wrapper.decrypt(keyring.wrapped_key.encode())
        except InvalidToken as exc:
            raise VaultSealedError("Secret vault could not be unsealed with the provided key") from exc
        self._fernet = Fernet(data_key)
        logger.info("vault.unsealed")

    def seal(self) -> None:
        self._fernet = None

    async def create(self, secret_id: str, value: str) -> None:
        fernet = self._unsealed()
        async with self._session_factory() as session:
            session.add(SecretEntry(id=secret_id, ciphertext=fernet.encrypt(value.encode()).decode()))
            try:
                await session.commit()
            except IntegrityError as exc:
                raise ConflictError(f"Secret '{secret_id}' already exists") from exc
        logger.debug("vault.created", secret_id=secret_id)

    async def get(self, secret_id: str) -> str:
        fernet = self._unsealed()
        async with self._session_factory() as session:
            entry = await self._load(session, secret_id)
        return self._decrypt(fernet, entry)

    async def replace(self, old_id: str, new_id: str, value: str) -> str:
        """Move the secret from ``old_id`` to ``new_id`` with a new value; return the old value."""
        fernet = self._unsealed()
        async with self._session_factory() as session:
            entry = await self._load(session, old_id)
            previous = self._decrypt(fernet, entry)
            await session.delete(entry)
            await session.flush()
            session.add(SecretEntry(id=new_id, ciphertext=fernet.encrypt(value.encode()).decode()))
            try:
                await session.commit()
            except IntegrityError as exc:
                raise ConflictError(f"Secret '{new_id}' already exists") from exc
        logger.debug("vault.replaced", old_id=old_id, new_id=new_id)
        return previous

    async def delete(self, secret_id: str) -> str:
        fernet = self._unsealed()
        async with self._session_factory() as session:
            entry = await self._load(session, secret_id)
            previous = self._decrypt(fernet, entry)
            await session.delete(entry)
            await session.commit()
        logger.debug("vault.deleted", secret_id=secret_id)
        return previous

    async def exists(self, secret_id: str) -> bool:
        self._unsealed()
        async with self._session_factory() as session:
            result = await session.execute(select(SecretEntry.id).where(SecretEntry.id == secret_id))
            return result.scalar_one_or_none() is not None

    def _unsealed(self) -> Fernet:
        if self._fernet is None:
            raise VaultSealedError("Secret vault is sealed")
        return self._fernet

    @staticmethod
    async def _load(session: AsyncSession, secret_id: str) -> SecretEntry:
        entry = await session.get(SecretEntry, secret_id)
        if entry is None:
            raise NotFoundError(f"Secret '{secret_id}' not found")
        return entry

    @staticmethod
    def _decrypt(fernet: Fernet, entry: SecretEntry) -> str:
        try:
            return fernet.decrypt(entry.ciphertext.encode()).decode()
        except InvalidToken as exc:
            raise VaultSealedError(f"Secret '{entry.id}' cannot be decrypted with the unsealed key") from exc
