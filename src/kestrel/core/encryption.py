"""
Encryption at rest for cached account data.

A random per-account secret lives in the system keyring; a Fernet key is
derived from it and used to seal sensitive text columns and attachment files.
"""

import base64
import secrets
from typing import Optional

import keyring
import keyring.errors
from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from ..utils.logging_setup import get_logger
from .cache_database import CacheLockedError

logger = get_logger(__name__)

DEFAULT_SERVICE_NAME = "kestrel-cache"
SECRET_BYTES = 32


def derive_key(secret: str, email: str) -> bytes:
    """
    Derive a Fernet key from a stored secret.
    
    Args:
        secret: Hex secret held in the keyring
        email: Account email, bound into the derivation
        
    Returns:
        bytes: urlsafe base64 Fernet key
    """
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=32,
        salt=None,
        info=f"kestrel-cache:{email}".encode("utf-8"),
    )
    return base64.urlsafe_b64encode(hkdf.derive(bytes.fromhex(secret)))


class FieldCipher:
    """Seals and opens individual column values."""
    
    def __init__(self, key: bytes):
        self._fernet = Fernet(key)
    
    def encrypt(self, value: str) -> str:
        return self._fernet.encrypt(value.encode("utf-8")).decode("ascii")
    
    def decrypt(self, token: str) -> str:
        try:
            return self._fernet.decrypt(token.encode("ascii")).decode("utf-8")
        except (InvalidToken, UnicodeError) as e:
            raise CacheLockedError("Cached value cannot be decrypted with the current key") from e
    
    def encrypt_bytes(self, data: bytes) -> bytes:
        return self._fernet.encrypt(data)
    
    def decrypt_bytes(self, token: bytes) -> bytes:
        try:
            return self._fernet.decrypt(token)
        except InvalidToken as e:
            raise CacheLockedError("Cached file cannot be decrypted with the current key") from e


class CacheKeyStore:
    """
    Keeps one cache secret per account in the system keyring.
    """
    
    def __init__(self, service_name: str = DEFAULT_SERVICE_NAME):
        self.service_name = service_name
        self.logger = logger
    
    def get_key(self, email: str) -> Optional[bytes]:
        """
        Get the derived key for an account without creating one.
        
        Raises:
            CacheLockedError: If the keyring cannot be read
        """
        try:
            # Read secret from keyring
            secret = keyring.get_password(self.service_name, email)
        except keyring.errors.KeyringError as e:
            self.logger.error(f"Failed to read cache key for {email}: {e}")
            raise CacheLockedError(f"Keyring unavailable: {e}") from e
        
        if secret is None:
            return None
        try:
            return derive_key(secret, email)
        except ValueError as e:
            raise CacheLockedError(f"Stored cache key for {email} is malformed") from e
    
    def get_or_create_key(self, email: str) -> bytes:
        """
        Get the derived key for an account, creating the secret on first use.
        
        Raises:
            CacheLockedError: If the keyring cannot be read or written
        """
        key = self.get_key(email)
        if key is not None:
            return key
        
        # Generate a new secret
        secret = secrets.token_hex(SECRET_BYTES)
        try:
            # Store secret securely
            keyring.set_password(self.service_name, email, secret)
        except keyring.errors.KeyringError as e:
            self.logger.error(f"Failed to store cache key for {email}: {e}")
            raise CacheLockedError(f"Keyring unavailable: {e}") from e
        
        self.logger.info(f"Created cache encryption key for {email}")
        return derive_key(secret, email)
    
    def delete_key(self, email: str) -> bool:
        """Remove an account's secret. Returns False if there was none."""
        try:
            keyring.delete_password(self.service_name, email)
            return True
        # Nothing stored for this account
        except keyring.errors.PasswordDeleteError:
            return False
        except keyring.errors.KeyringError as e:
            self.logger.warning(f"Failed to delete cache key for {email}: {e}")
            return False
    
    def cipher_for(self, email: str) -> FieldCipher:
        return FieldCipher(self.get_or_create_key(email))
