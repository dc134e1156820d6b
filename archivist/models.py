"""
In-memory model of a backup configuration.

All objects are immutable and built once per run by the loader (or directly
in code and tests). Archives refer to databases, destinations and encryption
recipes by id; BackupConfiguration.validate() checks those references.
"""

from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple


DATABASE_KINDS = ('mysql', 'postgresql', 'mongodb')
DESTINATION_KINDS = ('directory', 's3', 'ssh')
COMPRESSION_FORMATS = ('none', 'tar', 'tar.gz', 'tar.bz2', 'tar.xz', 'zip')


class ConfigurationError(Exception):
    """Raised when the backup configuration is invalid."""
    pass


class ConfigReferenceError(ConfigurationError):
    """Raised when an archive refers to an undeclared id."""
    pass


@dataclass(frozen=True)
class Credentials:
    username: str = ''
    password: str = ''


@dataclass(frozen=True)
class DatabaseSource:
    """A database server declared under <databases>."""
    id: str
    kind: str
    credentials: Credentials = field(default_factory=Credentials)
    host: str = 'localhost'
    port: Optional[int] = None


@dataclass(frozen=True)
class DatabaseSelector:
    """Exact name, '*' or regular expression choosing logical units."""
    name: str
    name_is_regex: bool = False


@dataclass(frozen=True)
class DatabaseSelection:
    db_id: str
    selectors: Tuple[DatabaseSelector, ...]


@dataclass(frozen=True)
class DirectorySource:
    path: str
    exclude_patterns: Tuple[str, ...] = ()


@dataclass(frozen=True)
class Destination:
    """
    A storage target. Only the fields belonging to `kind` are used:

    - directory: path
    - s3: bucket, region, prefix, access_key, secret_key, endpoint_url
    - ssh: server, port, username, password, private_key, path
    """
    id: str
    kind: str
    path: str = ''
    bucket: str = ''
    region: str = 'eu-central-1'
    prefix: str = ''
    access_key: str = ''
    secret_key: str = ''
    endpoint_url: str = ''
    server: str = ''
    port: int = 22
    username: str = ''
    password: str = ''
    private_key: str = ''


@dataclass(frozen=True)
class EncryptionRecipe:
    """
    External cipher invocation.

    `{filename}` in a parameter is replaced by the file to encrypt and
    `{output}` by the encrypted file, which is always `{filename}` + extension.
    """
    id: str
    program: str
    parameters: Tuple[str, ...]
    extension: str = '.enc'


@dataclass(frozen=True)
class ArchiveDefinition:
    name: str
    compression: str
    destinations: Tuple[str, ...]
    encryption: Optional[str] = None
    databases: Tuple[DatabaseSelection, ...] = ()
    directories: Tuple[DirectorySource, ...] = ()


@dataclass(frozen=True)
class BackupConfiguration:
    databases: Tuple[DatabaseSource, ...] = ()
    destinations: Tuple[Destination, ...] = ()
    encryptions: Tuple[EncryptionRecipe, ...] = ()
    archives: Tuple[ArchiveDefinition, ...] = ()
    working_directory: str = ''

    def database(self, db_id: str) -> DatabaseSource:
        return self._lookup(self.databases, db_id, 'database')

    def destination(self, destination_id: str) -> Destination:
        return self._lookup(self.destinations, destination_id, 'destination')

    def encryption(self, encryption_id: str) -> EncryptionRecipe:
        return self._lookup(self.encryptions, encryption_id, 'encryption')

    @staticmethod
    def _lookup(items, item_id: str, label: str):
        for item in items:
            if item.id == item_id:
                return item
        raise ConfigReferenceError(f"{label} '{item_id}' is not declared")

    def validate(self):
        """
        Check ids are unique and every archive reference resolves.

        Raises:
            ConfigReferenceError: On the first dangling or duplicate reference
        """
        for label, items in (('database', self.databases),
                             ('destination', self.destinations),
                             ('encryption', self.encryptions)):
            seen: Dict[str, bool] = {}
            for item in items:
                if item.id in seen:
                    raise ConfigReferenceError(f"the {label}-id '{item.id}' already exists")
                seen[item.id] = True

        for archive in self.archives:
            if not archive.destinations:
                raise ConfigReferenceError(f"archive '{archive.name}' has no destination")
            for destination_id in archive.destinations:
                self.destination(destination_id)
            if archive.encryption:
                self.encryption(archive.encryption)
            for selection in archive.databases:
                self.database(selection.db_id)
