"""
Shared pytest fixtures for archivist tests.

This module provides fixtures for:
- A fake process runner standing in for the database client programs
- Sample backup configurations
- An external cipher recipe backed by tests/helpers/fernet_cipher.py
- Mock fixtures for external services (S3, SSH)
- Temporary file fixtures
"""

import io
import os
import sys
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
import boto3
from cryptography.fernet import Fernet
from moto import mock_aws

from archivist.models import (
    ArchiveDefinition, BackupConfiguration, Credentials, DatabaseSelection,
    DatabaseSelector, DatabaseSource, Destination, DirectorySource, EncryptionRecipe
)
from archivist.utils.process import CommandError, ProcessRunner


CIPHER_SCRIPT = str(Path(__file__).parent / 'helpers' / 'fernet_cipher.py')
LISTING_PROGRAMS = ('mysql', 'psql', 'mongosh')
UNIT_PREFIXES = ('--dbname=', '--db=', '--collection=')

FROZEN_TIME = datetime(2024, 1, 15, 12, 30, 45, tzinfo=timezone.utc)


class FakeRunner(ProcessRunner):
    """
    ProcessRunner that answers database client programs from memory.

    Listing programs return `databases`, dump programs stream `dumps[unit]`
    (default: a small SQL text). Units in `failing` stream some bytes and then
    fail on exit like a dump tool with a non-zero status. Every other program
    (e.g. the cipher script) really runs.
    """

    def __init__(self, databases=None, dumps=None, failing=(), list_error=None, **kwargs):
        super().__init__(**kwargs)
        self.databases = list(databases or [])
        self.dumps = dict(dumps or {})
        self.failing = set(failing)
        self.list_error = list_error
        self.calls = []

    def run(self, args, env=None):
        if args[0] not in LISTING_PROGRAMS:
            return super().run(args, env=env)
        self.calls.append((list(args), env))
        if self.list_error:
            raise CommandError(args[0], 1, self.list_error)
        return '\n'.join(self.databases) + '\n'

    @staticmethod
    def unit_of(args):
        values = {}
        for arg in args:
            for prefix in UNIT_PREFIXES:
                if arg.startswith(prefix):
                    values[prefix] = arg[len(prefix):]
        if '--collection=' in values:
            return f"{values['--db=']}.{values['--collection=']}"
        return values.get('--dbname=') or values.get('--db=') or args[-1]

    @contextmanager
    def stream(self, args, env=None):
        self.calls.append((list(args), env))
        unit = self.unit_of(args)
        data = self.dumps.get(unit, f"-- dump of {unit}\n".encode())
        yield io.BytesIO(data)
        if unit in self.failing:
            raise CommandError(args[0], 2, f"dump of {unit} failed")

    @property
    def dumped_units(self):
        return [self.unit_of(args) for args, _ in self.calls if args[0] not in LISTING_PROGRAMS]


@pytest.fixture
def fake_runner():
    """Factory for FakeRunner instances."""
    def factory(databases=None, **kwargs):
        return FakeRunner(databases=databases, **kwargs)
    return factory


@pytest.fixture
def frozen_clock():
    """Clock always returning 2024-01-15 12:30:45 UTC."""
    return lambda: FROZEN_TIME


@pytest.fixture
def cipher_script():
    """Path of the Fernet cipher program."""
    return CIPHER_SCRIPT


@pytest.fixture
def cipher_key():
    return Fernet.generate_key().decode()


@pytest.fixture
def cipher_recipe(cipher_key):
    """
    Encryption recipe running the Fernet cipher script.

    Writes {filename}.enc like the openssl recipe.
    """
    return EncryptionRecipe(
        id='fernet',
        program=sys.executable,
        parameters=(CIPHER_SCRIPT, 'encrypt', cipher_key, '{filename}', '{output}'),
        extension='.enc'
    )


@pytest.fixture
def decrypt_file(cipher_key):
    """Decrypt a file produced by cipher_recipe and return the plaintext bytes."""
    def decrypt(path):
        with open(path, 'rb') as f:
            return Fernet(cipher_key.encode()).decrypt(f.read())
    return decrypt


@pytest.fixture
def source_directory(tmp_path):
    """
    Create a directory to archive.

    Creates:
    - config/app.conf
    - config/app.conf.bak (excluded in tests)
    - config/nested/extra.txt
    """
    directory = tmp_path / 'source' / 'config'
    directory.mkdir(parents=True)
    (directory / 'app.conf').write_text('setting = 1\n')
    (directory / 'app.conf.bak').write_text('setting = 0\n')
    nested = directory / 'nested'
    nested.mkdir()
    (nested / 'extra.txt').write_text('extra\n')
    return directory


@pytest.fixture
def working_directory(tmp_path):
    path = tmp_path / 'work'
    path.mkdir()
    return path


@pytest.fixture
def backup_configuration(tmp_path, source_directory, working_directory, cipher_recipe):
    """
    Configuration with one mysql server, two directory destinations and one
    archive per database kind of test.
    """
    return BackupConfiguration(
        databases=(
            DatabaseSource(id='main', kind='mysql', credentials=Credentials('backup', 'secret')),
        ),
        destinations=(
            Destination(id='local', kind='directory', path=str(tmp_path / 'dest' / 'local')),
            Destination(id='mirror', kind='directory', path=str(tmp_path / 'dest' / 'mirror')),
        ),
        encryptions=(cipher_recipe,),
        archives=(
            ArchiveDefinition(
                name='db-{date:year}{date:month}{date:day}',
                compression='tar.gz',
                destinations=('local', 'mirror'),
                databases=(
                    DatabaseSelection('main', (DatabaseSelector('test.*', name_is_regex=True),)),
                ),
            ),
            ArchiveDefinition(
                name='files-{date:weekday}',
                compression='zip',
                destinations=('local',),
                directories=(DirectorySource(str(source_directory), ('*.bak',)),),
            ),
        ),
        working_directory=str(working_directory)
    )


@pytest.fixture
def aws_credentials(monkeypatch):
    """Fake AWS credentials so boto3 never looks for real ones."""
    monkeypatch.setenv('AWS_ACCESS_KEY_ID', 'testing')
    monkeypatch.setenv('AWS_SECRET_ACCESS_KEY', 'testing')
    monkeypatch.setenv('AWS_SECURITY_TOKEN', 'testing')
    monkeypatch.setenv('AWS_SESSION_TOKEN', 'testing')
    monkeypatch.setenv('AWS_DEFAULT_REGION', 'us-east-1')


@pytest.fixture
def mock_s3(aws_credentials):
    """
    Mock AWS S3 service using moto.

    Creates a test bucket 'test-bucket' in us-east-1 region.
    """
    with mock_aws():
        s3 = boto3.resource('s3', region_name='us-east-1')
        s3.create_bucket(Bucket='test-bucket')
        yield s3


@pytest.fixture
def mock_ssh_client():
    """
    Mock paramiko SSHClient for SFTP testing.

    Returns the patched class; its return_value.open_sftp() is a MagicMock.
    """
    with patch('archivist.backup.storage.SSHClient') as mock_ssh:
        mock_sftp = MagicMock()
        mock_ssh.return_value.open_sftp.return_value = mock_sftp
        mock_ssh.return_value.connect.return_value = None
        yield mock_ssh


@pytest.fixture
def sample_file(tmp_path):
    """A small file standing in for a finished archive."""
    path = tmp_path / 'sample.tar.gz'
    path.write_bytes(os.urandom(2048))
    return path
