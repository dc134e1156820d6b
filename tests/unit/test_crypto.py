"""
Unit tests for cryptography module (archivist/utils/crypto.py).

Tests CryptoManager used by the secrets store.
"""

import pytest
from cryptography.fernet import InvalidToken

from archivist.utils.crypto import CryptoManager


# Fast key derivation for tests
ITERATIONS = 1000


class TestCryptoManagerInitialization:
    """Test CryptoManager initialization."""

    def test_initialize_without_salt(self):
        """Test initialization without providing salt generates new salt."""
        cm = CryptoManager(ITERATIONS)
        salt = cm.initialize('test_passphrase')

        assert isinstance(salt, bytes)
        assert len(salt) == 16
        assert cm.salt == salt

    def test_initialize_with_salt(self):
        """Test initialization with provided salt uses that salt."""
        cm = CryptoManager(ITERATIONS)

        assert cm.initialize('test_passphrase', salt=b'1234567890123456') == b'1234567890123456'

    def test_initialize_sets_initialized(self):
        """Test initialization sets is_initialized property to True."""
        cm = CryptoManager(ITERATIONS)

        assert cm.is_initialized is False
        cm.initialize('test_passphrase')
        assert cm.is_initialized is True


class TestCryptoManagerEncryption:
    """Test CryptoManager encrypt/decrypt."""

    def test_round_trip(self):
        """Test decrypt(encrypt(x)) == x."""
        cm = CryptoManager(ITERATIONS)
        cm.initialize('test_passphrase')

        token = cm.encrypt('mysql-password')

        assert token != 'mysql-password'
        assert cm.decrypt(token) == 'mysql-password'

    def test_same_passphrase_and_salt_decrypts(self):
        """Test a second manager with the stored salt can decrypt."""
        cm1 = CryptoManager(ITERATIONS)
        salt = cm1.initialize('test_passphrase')
        token = cm1.encrypt('value')

        cm2 = CryptoManager(ITERATIONS)
        cm2.initialize('test_passphrase', salt)

        assert cm2.decrypt(token) == 'value'

    def test_wrong_passphrase(self):
        """Test a different passphrase cannot decrypt."""
        cm1 = CryptoManager(ITERATIONS)
        salt = cm1.initialize('right')
        token = cm1.encrypt('value')

        cm2 = CryptoManager(ITERATIONS)
        cm2.initialize('wrong', salt)

        with pytest.raises(InvalidToken):
            cm2.decrypt(token)

    def test_not_initialized(self):
        """Test encrypting or decrypting without initialization raises RuntimeError."""
        cm = CryptoManager(ITERATIONS)

        with pytest.raises(RuntimeError, match="not initialized"):
            cm.encrypt('value')
        with pytest.raises(RuntimeError, match="not initialized"):
            cm.decrypt('token')
