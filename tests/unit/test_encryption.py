"""
Unit tests for the encryptor (archivist/backup/encryption.py).

Round trips use tests/helpers/fernet_cipher.py as the external program.
"""

import os
import shutil
import subprocess
import sys

import pytest

from archivist.backup.encryption import (
    build_command,
    openssl_recipe,
    Encryptor,
    EncryptionError
)
from archivist.models import EncryptionRecipe
from archivist.utils.process import ProcessRunner


class TestBuildCommand:
    """Test placeholder substitution."""

    def test_filename_and_output_substituted(self):
        """Test {filename} and {output} are replaced in every parameter."""
        recipe = EncryptionRecipe(
            id='gpg', program='gpg',
            parameters=('--output', '{output}', '--symmetric', '{filename}'),
            extension='.gpg'
        )

        args, output_path = build_command(recipe, '/work/db.tar.gz')

        assert output_path == '/work/db.tar.gz.gpg'
        assert args == ['gpg', '--output', '/work/db.tar.gz.gpg', '--symmetric', '/work/db.tar.gz']

    def test_placeholder_inside_parameter(self):
        """Test placeholders embedded in a longer parameter."""
        recipe = EncryptionRecipe(id='x', program='tool', parameters=('--in={filename}', '--out={filename}.enc'))

        args, output_path = build_command(recipe, '/work/a.tar')

        assert args == ['tool', '--in=/work/a.tar', '--out=/work/a.tar.enc']
        assert output_path == '/work/a.tar.enc'

    def test_openssl_recipe(self):
        """Test the openssl recipe matches the classic invocation."""
        recipe = openssl_recipe('default', 'aes-256-cbc', 'secret')

        args, output_path = build_command(recipe, '/work/a.tar')

        assert args == [
            'openssl', 'aes-256-cbc', '-pbkdf2',
            '-in', '/work/a.tar', '-out', '/work/a.tar.enc', '-k', 'secret'
        ]
        assert output_path == '/work/a.tar.enc'


class TestEncryptor:
    """Test Encryptor with a real external program."""

    def test_encrypt_then_decrypt_round_trip(self, tmp_path, cipher_recipe, decrypt_file):
        """Test decrypting the output reproduces the compressed file."""
        original = tmp_path / 'db.tar.gz'
        original.write_bytes(os.urandom(4096))

        output_path = Encryptor().encrypt(cipher_recipe, str(original))

        assert output_path == str(original) + '.enc'
        assert os.path.exists(output_path)
        assert decrypt_file(output_path) == original.read_bytes()

    def test_round_trip_with_cipher_program(self, tmp_path, cipher_recipe, cipher_key, cipher_script):
        """Test the cipher program's own decrypt mode restores the bytes."""
        original = tmp_path / 'db.tar'
        original.write_bytes(b'archive bytes' * 100)

        encrypted = Encryptor().encrypt(cipher_recipe, str(original))
        restored = tmp_path / 'restored.tar'
        subprocess.run(
            [sys.executable, cipher_script, 'decrypt', cipher_key, encrypted, str(restored)],
            check=True
        )

        assert restored.read_bytes() == original.read_bytes()

    def test_nonzero_exit_raises_and_removes_partial_output(self, tmp_path, cipher_key, cipher_script):
        """Test a failing program raises EncryptionError and leaves no output."""
        original = tmp_path / 'db.tar'
        original.write_bytes(b'data')
        recipe = EncryptionRecipe(
            id='broken', program=sys.executable,
            parameters=(cipher_script, 'fail', cipher_key, '{filename}', '{output}')
        )

        with pytest.raises(EncryptionError) as exc_info:
            Encryptor().encrypt(recipe, str(original))

        assert "recipe 'broken'" in str(exc_info.value)
        assert 'cipher failed' in str(exc_info.value)
        assert not os.path.exists(str(original) + '.enc')

    def test_missing_program(self, tmp_path):
        """Test a missing program raises EncryptionError."""
        original = tmp_path / 'db.tar'
        original.write_bytes(b'data')
        recipe = EncryptionRecipe(id='nope', program='archivist-no-such-cipher', parameters=('{filename}',))

        with pytest.raises(EncryptionError, match="Program not found"):
            Encryptor().encrypt(recipe, str(original))

    def test_missing_output_file(self, tmp_path):
        """Test a program that writes nothing is an error."""
        original = tmp_path / 'db.tar'
        original.write_bytes(b'data')
        recipe = EncryptionRecipe(id='noop', program=sys.executable, parameters=('-c', 'pass'))

        with pytest.raises(EncryptionError, match="produced no output file"):
            Encryptor().encrypt(recipe, str(original))

    def test_missing_input_file(self, tmp_path, cipher_recipe):
        """Test encrypting a missing file raises EncryptionError."""
        with pytest.raises(EncryptionError, match="not found"):
            Encryptor().encrypt(cipher_recipe, str(tmp_path / 'missing.tar'))

    @pytest.mark.skipif(shutil.which('openssl') is None, reason="openssl not installed")
    def test_openssl_round_trip(self, tmp_path):
        """Test the openssl recipe against the real openssl program."""
        original = tmp_path / 'db.tar'
        original.write_bytes(os.urandom(1024))

        encrypted = Encryptor(ProcessRunner(timeout=60)).encrypt(
            openssl_recipe('default', 'aes-256-cbc', 'secret'), str(original)
        )
        restored = tmp_path / 'restored.tar'
        subprocess.run(
            ['openssl', 'aes-256-cbc', '-d', '-pbkdf2', '-in', encrypted, '-out', str(restored), '-k', 'secret'],
            check=True
        )

        assert restored.read_bytes() == original.read_bytes()
