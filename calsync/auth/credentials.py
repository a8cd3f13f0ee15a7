"""Provider bearer token storage and resolution."""

import logging
import os
import secrets
from typing import Optional, Union

from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from calsync.config import get_encryption_key
from calsync.database import get_database
from calsync.sync.errors import SyncConfigurationError
from calsync.utils.dates import now_db

logger = logging.getLogger(__name__)


class TokenCipher:
    """Encrypts stored tokens with AES-256-GCM."""

    def __init__(self, key: bytes):
        """Initialize with a key of at least 32 bytes."""
        if len(key) < 32:
            raise ValueError("Encryption key must be at least 32 bytes")
        self._aesgcm = AESGCM(key[:32])

    def encrypt(self, plaintext: Union[str, bytes]) -> bytes:
        """Encrypt to nonce + ciphertext."""
        if isinstance(plaintext, str):
            plaintext = plaintext.encode("utf-8")
        nonce = os.urandom(12)
        return nonce + self._aesgcm.encrypt(nonce, plaintext, None)

    def decrypt(self, encrypted_data: bytes) -> str:
        if len(encrypted_data) < 12:
            raise ValueError("Invalid encrypted data: too short")
        nonce, ciphertext = encrypted_data[:12], encrypted_data[12:]
        return self._aesgcm.decrypt(nonce, ciphertext, None).decode("utf-8")


def generate_encryption_key() -> bytes:
    """Generate a new 32-byte encryption key."""
    return secrets.token_bytes(32)


_cipher: Optional[TokenCipher] = None


def get_cipher() -> TokenCipher:
    """Global cipher built from the configured key file."""
    global _cipher
    if _cipher is None:
        _cipher = TokenCipher(get_encryption_key())
    return _cipher


def init_cipher(key: bytes) -> TokenCipher:
    """Install a cipher for a specific key."""
    global _cipher
    _cipher = TokenCipher(key)
    return _cipher


async def store_access_token(
    account_handle: str,
    access_token: str,
    user_id: Optional[str] = None,
) -> None:
    """Store (or replace) the bearer token of a provider account."""
    db = await get_database()
    await db.execute(
        """INSERT INTO oauth_tokens (account_handle, user_id, access_token_encrypted, updated_at)
           VALUES (?, ?, ?, ?)
           ON CONFLICT(account_handle) DO UPDATE SET
           access_token_encrypted = excluded.access_token_encrypted,
           user_id = COALESCE(excluded.user_id, oauth_tokens.user_id),
           updated_at = excluded.updated_at""",
        (account_handle, user_id, get_cipher().encrypt(access_token), now_db()),
    )
    await db.commit()


async def get_access_token(account_handle: str) -> str:
    """Bearer token for a provider account; refreshing it is someone else's job."""
    db = await get_database()
    cursor = await db.execute(
        "SELECT access_token_encrypted FROM oauth_tokens WHERE account_handle = ?",
        (account_handle,),
    )
    row = await cursor.fetchone()
    if not row:
        raise SyncConfigurationError(f"No access token stored for account {account_handle}")
    return get_cipher().decrypt(row["access_token_encrypted"])
