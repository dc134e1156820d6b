"""
Source handlers for backup operations.

Supports:
- MySQLSource: databases dumped with mysqldump
- PostgreSQLSource: databases dumped with pg_dump
- MongoDBSource: databases or collections dumped with mongodump
- DirectorySourceAdapter: files/directories archived verbatim

Every handler offers the same two calls: enumerate(selectors) resolves the
archive's selectors against the live source, and dump(unit) returns the
ArchiveEntry the compressor consumes. Handlers are registered by kind in
SOURCE_KINDS.
"""

import logging
import os
import re
from contextlib import contextmanager
from dataclasses import replace
from fnmatch import fnmatch
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

from archivist.models import DatabaseSelector, DatabaseSource, DirectorySource
from archivist.utils.process import CommandError, ProcessRunner
from .compression import ArchiveEntry


logger = logging.getLogger(__name__)

WILDCARD = '*'


class SourceError(Exception):
    """Raised when enumerating or dumping a source fails."""

    def __init__(self, source_id: str, message: str):
        self.source_id = source_id
        super().__init__(f"[{source_id}] {message}")


class SelectorResolutionError(SourceError):
    """Raised when an archive's selectors match nothing."""
    pass


def resolve_selectors(source_id: str, available: Sequence[str], selectors: Sequence[DatabaseSelector]) -> List[str]:
    """
    Resolve selectors against the units a source currently has.

    Each selector is evaluated independently, in enumeration order. Results
    are de-duplicated by name keeping the first occurrence.

    Args:
        source_id: Id used in error messages
        available: Live enumeration of the source
        selectors: Exact names, '*' or regular expressions (full match)

    Returns:
        Selected unit names

    Raises:
        SourceError: If an exact name does not exist or a regex is invalid
        SelectorResolutionError: If nothing was selected
    """
    resolved = []

    for selector in selectors:
        if selector.name_is_regex:
            try:
                pattern = re.compile(selector.name)
            except re.error as e:
                raise SourceError(source_id, f"Invalid regular expression '{selector.name}': {e}")
            matches = [name for name in available if pattern.fullmatch(name)]
        elif selector.name == WILDCARD:
            matches = list(available)
        elif selector.name in available:
            matches = [selector.name]
        else:
            raise SourceError(source_id, f"Unknown database: {selector.name}")

        for name in matches:
            if name not in resolved:
                resolved.append(name)

    if not resolved:
        patterns = ', '.join(s.name for s in selectors) or '(none)'
        raise SelectorResolutionError(source_id, f"Selectors matched nothing: {patterns}")

    return resolved


class DatabaseSourceHandler:
    """
    Base class for database servers dumped by an external program.

    Subclasses provide list_command(), parse_listing(), dump_command() and
    the entry extension.
    """

    kind = None
    extension = '.sql'
    # Units never selected by '*' or a regex
    system_units: Tuple[str, ...] = ()

    def __init__(self, source: DatabaseSource, runner: Optional[ProcessRunner] = None):
        self.source = source
        self.runner = runner or ProcessRunner()

    @property
    def credentials(self):
        return self.source.credentials

    def environment(self) -> Dict[str, str]:
        """Extra environment variables for the client programs."""
        return {}

    def list_command(self) -> List[str]:
        raise NotImplementedError

    def parse_listing(self, output: str) -> List[str]:
        return [line.strip() for line in output.splitlines() if line.strip()]

    def dump_command(self, unit: str) -> List[str]:
        raise NotImplementedError

    def list_units(self) -> List[str]:
        """
        List logical units (databases) on the live server.

        Raises:
            SourceError: If the server cannot be queried
        """
        try:
            output = self.runner.run(self.list_command(), env=self.environment())
        except CommandError as e:
            raise SourceError(self.source.id, f"Failed to list databases: {e}")
        return self.parse_listing(output)

    def enumerate(self, selectors: Sequence[DatabaseSelector]) -> List[str]:
        available = self.list_units()
        explicit = {s.name for s in selectors if not s.name_is_regex and s.name != WILDCARD}
        # System databases only when named exactly
        candidates = [name for name in available if name not in self.system_units or name in explicit]
        units = resolve_selectors(self.source.id, candidates, selectors)
        logger.info(f"[{self.source.id}] selected {len(units)} of {len(available)} databases")
        return units

    def entry_name(self, unit: str) -> str:
        # <source id>/<unit>: unique across the sources of one archive
        return f"{self.source.id}/{unit}{self.extension}"

    def dump(self, unit: str) -> ArchiveEntry:
        """Get the archive entry streaming the dump of one unit."""
        return ArchiveEntry(name=self.entry_name(unit), opener=lambda: self._open_dump(unit))

    @contextmanager
    def _open_dump(self, unit: str):
        logger.info(f"dumping {self.kind}-database: {unit}")
        try:
            with self.runner.stream(self.dump_command(unit), env=self.environment()) as stream:
                yield stream
        except CommandError as e:
            raise SourceError(self.source.id, f"Failed to dump {unit}: {e}")


class MySQLSource(DatabaseSourceHandler):
    kind = 'mysql'
    extension = '.sql'
    system_units = ('information_schema', 'performance_schema')

    def _connection_args(self) -> List[str]:
        args = [f"--host={self.source.host}"]
        if self.source.port:
            args.append(f"--port={self.source.port}")
        if self.credentials.username:
            args.append(f"--user={self.credentials.username}")
        return args

    def environment(self) -> Dict[str, str]:
        # MYSQL_PWD keeps the password off the command line
        if self.credentials.password:
            return {'MYSQL_PWD': self.credentials.password}
        return {}

    def list_command(self) -> List[str]:
        return ['mysql', *self._connection_args(), '-N', '-B', '-e', 'SHOW DATABASES']

    def dump_command(self, unit: str) -> List[str]:
        return ['mysqldump', *self._connection_args(), '--single-transaction', '--databases', unit]


class PostgreSQLSource(DatabaseSourceHandler):
    kind = 'postgresql'
    extension = '.sql'

    LIST_QUERY = "SELECT datname FROM pg_database WHERE NOT datistemplate ORDER BY datname"

    def _connection_args(self) -> List[str]:
        args = [f"--host={self.source.host}"]
        if self.source.port:
            args.append(f"--port={self.source.port}")
        if self.credentials.username:
            args.append(f"--username={self.credentials.username}")
        return args

    def environment(self) -> Dict[str, str]:
        if self.credentials.password:
            return {'PGPASSWORD': self.credentials.password}
        return {}

    def list_command(self) -> List[str]:
        return ['psql', *self._connection_args(), '--dbname=postgres', '-At', '-c', self.LIST_QUERY]

    def dump_command(self, unit: str) -> List[str]:
        return ['pg_dump', *self._connection_args(), f"--dbname={unit}"]


class MongoDBSource(DatabaseSourceHandler):
    """
    MongoDB handler.

    Units are databases. A non-regex selector of the form 'db.collection'
    selects a single collection of an existing database.
    """

    kind = 'mongodb'
    extension = '.bson'

    LIST_SCRIPT = (
        "db.adminCommand({listDatabases: 1, nameOnly: true})"
        ".databases.forEach(function (d) { print(d.name); })"
    )

    def _uri(self) -> str:
        port = self.source.port or 27017
        return f"mongodb://{self.source.host}:{port}"

    def _auth_args(self) -> List[str]:
        args = []
        if self.credentials.username:
            args += ['--username', self.credentials.username]
            if self.credentials.password:
                args += ['--password', self.credentials.password]
            args.append('--authenticationDatabase=admin')
        return args

    def list_command(self) -> List[str]:
        return ['mongosh', self._uri(), '--quiet', *self._auth_args(), '--eval', self.LIST_SCRIPT]

    def enumerate(self, selectors: Sequence[DatabaseSelector]) -> List[str]:
        databases = self.list_units()
        collections = []
        plain = []

        for selector in selectors:
            if not selector.name_is_regex and '.' in selector.name and selector.name not in databases:
                database = selector.name.split('.', 1)[0]
                if database not in databases:
                    raise SourceError(self.source.id, f"Unknown database: {database}")
                if selector.name not in collections:
                    collections.append(selector.name)
            else:
                plain.append(selector)

        units = resolve_selectors(self.source.id, databases, plain) if plain else []
        units += [name for name in collections if name not in units]
        logger.info(f"[{self.source.id}] selected {len(units)} mongodb units")
        return units

    def dump_command(self, unit: str) -> List[str]:
        command = ['mongodump', f"--uri={self._uri()}", *self._auth_args(), '--archive']
        # Database names cannot contain dots, so a dotted unit is a collection
        if '.' in unit:
            database, collection = unit.split('.', 1)
            command += [f"--db={database}", f"--collection={collection}"]
        else:
            command.append(f"--db={unit}")
        return command


class DirectorySourceAdapter:
    """
    Handler for local filesystem paths.

    The path itself is the only unit; it is added to the archive verbatim
    under its base name, minus anything matching the exclude patterns.
    """

    kind = 'directory'

    def __init__(self, directory: DirectorySource):
        self.directory = directory
        self.exclude_patterns = list(directory.exclude_patterns)

    @property
    def source_path(self) -> Path:
        return Path(self.directory.path).expanduser().resolve()

    def _should_exclude(self, path: Path) -> bool:
        """
        Check if a path should be excluded based on exclude patterns.

        Args:
            path: Path to check

        Returns:
            True if path matches any exclude pattern, False otherwise
        """
        if not self.exclude_patterns:
            return False

        path_str = str(path)
        path_name = path.name

        for pattern in self.exclude_patterns:
            # Match against full path or just the name
            if fnmatch(path_str, pattern) or fnmatch(path_name, pattern):
                return True
            if pattern.startswith('**/') and fnmatch(path_name, pattern[3:]):
                return True

        return False

    def enumerate(self, selectors=None) -> List[str]:
        path = self.source_path
        if not path.exists():
            raise SourceError(self.directory.path, f"Path does not exist: {self.directory.path}")
        if not os.access(path, os.R_OK):
            raise SourceError(self.directory.path, f"Permission denied accessing {self.directory.path}")
        return [str(path)]

    def dump(self, unit: str) -> ArchiveEntry:
        path = Path(unit)
        return ArchiveEntry(
            name=path.name or 'root',
            path=str(path),
            exclude=self._should_exclude if self.exclude_patterns else None
        )



def disambiguate_paths(entries: List[ArchiveEntry]) -> List[ArchiveEntry]:
    """
    Rename path entries that share a base name.

    Each colliding entry is named after the shortest trailing part of its
    source path that tells the group apart, e.g. /srv/a/data and /srv/b/data
    become a/data and b/data. Stream entries are left alone.
    """
    groups: Dict[str, List[int]] = {}
    for index, entry in enumerate(entries):
        if not entry.is_stream:
            groups.setdefault(entry.name, []).append(index)

    renamed = list(entries)
    for indexes in groups.values():
        if len(indexes) < 2:
            continue
        parts = [Path(entries[i].path).parts[1:] for i in indexes]
        longest = max(len(p) for p in parts)
        for depth in range(2, longest + 1):
            names = ["/".join(p[-depth:]) for p in parts]
            if len(set(names)) == len(names):
                for index, name in zip(indexes, names):
                    renamed[index] = replace(entries[index], name=name)
                break

    return renamed


SOURCE_KINDS = {
    'mysql': MySQLSource,
    'postgresql': PostgreSQLSource,
    'mongodb': MongoDBSource,
}


def register_source_kind(kind: str, handler_class):
    """Register a database handler class for a kind string."""
    SOURCE_KINDS[kind] = handler_class


def create_source(source: DatabaseSource, runner: Optional[ProcessRunner] = None) -> DatabaseSourceHandler:
    """
    Factory function to create the handler for a database source.

    Raises:
        SourceError: If the kind has no registered handler
    """
    handler_class = SOURCE_KINDS.get(source.kind)
    if handler_class is None:
        raise SourceError(source.id, f"Invalid database kind: {source.kind}")
    return handler_class(source, runner)
