"""
Encryption utilities for the secrets store.

Secrets referenced from the backup configuration ([name] placeholders) can be
kept in a JSON file whose values are Fernet tokens. The Fernet key is derived
from a passphrase with PBKDF2; the salt is stored alongside the secrets.
"""

import os
import base64
from cryptography.fernet import Fernet
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC


class CryptoManager:
    """Handles encryption and decryption of secret values."""

    def __init__(self, iterations: int = 480000):
        self._fernet = None
        self._salt = None
        self.iterations = iterations

    def initialize(self, passphrase: str, salt: bytes = None) -> bytes:
        """
        Initialize the encryption manager with a passphrase.

        Args:
            passphrase: Passphrase to derive the encryption key from
            salt: Optional salt (if None, generates new one)

        Returns:
            The salt used (stored in the secrets file)
        """
        if salt is None:
            salt = os.urandom(16)

        self._salt = salt

        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=salt,
            iterations=self.iterations,
        )
        key = base64.urlsafe_b64encode(kdf.derive(passphrase.encode()))

        self._fernet = Fernet(key)
        return salt

    @property
    def salt(self) -> bytes:
        return self._salt

    def encrypt(self, plaintext: str) -> str:
        """
        Encrypt a string.

        Returns:
            Fernet token as text

        Raises:
            RuntimeError: If crypto manager not initialized
        """
        if not self._fernet:
            raise RuntimeError("CryptoManager not initialized. Call initialize() first.")

        return self._fernet.encrypt(plaintext.encode()).decode()

    def decrypt(self, token: str) -> str:
        """
        Decrypt a Fernet token.

        Raises:
            RuntimeError: If crypto manager not initialized
            cryptography.fernet.InvalidToken: If the passphrase is wrong or the token is corrupt
        """
        if not self._fernet:
            raise RuntimeError("CryptoManager not initialized. Call initialize() first.")

        return self._fernet.decrypt(token.encode()).decode()

    @property
    def is_initialized(self) -> bool:
        """Check if the crypto manager has been initialized."""
        return self._fernet is not None
