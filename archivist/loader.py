"""
Loader for the XML backup configuration document.

Example:

    <backup-configuration working-directory="/var/tmp/archivist">
        <databases>
            <database id="main" kind="mysql" username="backup" password="[mysql-main]"/>
        </databases>
        <destinations>
            <destination id="local" kind="directory" path="/srv/backups"/>
            <destination id="offsite" kind="s3" bucket="backups" region="eu-central-1"/>
        </destinations>
        <encryptions>
            <encryption id="gpg" program="gpg" extension=".gpg">
                <parameters>
                    <parameter longname="batch"/>
                    <parameter longname="passphrase" value="[gpg]" assign-sign=" "/>
                    <parameter longname="output" value="{output}" assign-sign=" "/>
                    <parameter longname="symmetric" value="{filename}" assign-sign=" "/>
                </parameters>
            </encryption>
        </encryptions>
        <archives>
            <archive name="db-{date:year}-{date:month}-{date:day}" compression="tar.gz"
                     destinations="local,offsite" encryption="gpg">
                <databases db-id="main">
                    <database name="*"/>
                    <database name="^shop_.*$" name-is-regex="yes"/>
                </databases>
                <directories>
                    <directory name="/etc/nginx" exclude="*.bak"/>
                </directories>
            </archive>
        </archives>
    </backup-configuration>

Credential attributes may hold `[name]` placeholders resolved through
archivist.secrets. References between sections are checked later by
BackupConfiguration.validate() so a run reports them before any archive
starts.
"""

import logging
import os
import re
import xml.etree.ElementTree as ET
from typing import Callable, List, Optional

from archivist.models import (
    ArchiveDefinition, BackupConfiguration, ConfigurationError, Credentials,
    DatabaseSelection, DatabaseSelector, DatabaseSource, Destination, DirectorySource,
    EncryptionRecipe, COMPRESSION_FORMATS, DATABASE_KINDS, DESTINATION_KINDS
)
from archivist.backup.encryption import openssl_recipe
from archivist.backup.templating import validate_template


logger = logging.getLogger(__name__)

ROOT_ELEMENT = 'backup-configuration'
TRUE_VALUES = ('1', 'true', 'yes', 'on', 'enabled')

# Regions served from a non-AWS endpoint
CUSTOM_REGIONS = {
    'storj-eu1': 'https://gateway.storjshare.io',
}


def parse_bool(value: Optional[str]) -> bool:
    return (value or '').strip().lower() in TRUE_VALUES


def split_list(value: Optional[str]) -> List[str]:
    return [item.strip() for item in (value or '').split(',') if item.strip()]


def render_parameter(element: ET.Element, resolve_value: Optional[Callable] = None) -> List[str]:
    """
    Turn a <parameter> element into command line tokens.

    longname="out" value="x"       -> --out=x
    longname="out" value="x" assign-sign=" " -> --out x
    shortname="o" value="x"        -> -o x
    value="x"                      -> x
    """
    longname = element.get('longname')
    shortname = element.get('shortname')
    value = element.get('value')
    if value is not None and resolve_value is not None:
        value = resolve_value(value)
    assign_sign = element.get('assign-sign', '=')

    if longname:
        option = f"--{longname}"
        if value is None:
            return [option]
        if not assign_sign.strip():
            return [option, value]
        return [f"{option}{assign_sign}{value}"]

    if shortname:
        option = f"-{shortname}"
        return [option] if value is None else [option, value]

    if value is not None:
        return [value]

    raise ConfigurationError("parameter needs a longname, shortname or value")


class ConfigurationLoader:
    """
    Builds a BackupConfiguration from an XML document.
    """

    def __init__(self, resolve_secret: Optional[Callable[[Optional[str]], Optional[str]]] = None):
        """
        Args:
            resolve_secret: Called with every credential attribute; returns
                the value with placeholders resolved (default: unchanged)
        """
        self.resolve_secret = resolve_secret or (lambda value: value)

    def load(self, path: str) -> BackupConfiguration:
        """
        Load a configuration file.

        Raises:
            ConfigurationError: If the file is missing, malformed or invalid
        """
        path = os.path.expanduser(path)
        if not os.path.exists(path):
            raise ConfigurationError(f"backup configuration '{path}' does not exist")

        try:
            root = ET.parse(path).getroot()
        except ET.ParseError as e:
            raise ConfigurationError(f"XML error in '{path}': {e}")
        except OSError as e:
            raise ConfigurationError(f"unable to open backup configuration '{path}': {e}")

        configuration = self.parse(root)
        logger.info(
            f"Loaded {path}: {len(configuration.archives)} archive(s), "
            f"{len(configuration.databases)} database(s), {len(configuration.destinations)} destination(s)"
        )
        return configuration

    def loads(self, text: str) -> BackupConfiguration:
        try:
            root = ET.fromstring(text)
        except ET.ParseError as e:
            raise ConfigurationError(f"XML error: {e}")
        return self.parse(root)

    def parse(self, root: ET.Element) -> BackupConfiguration:
        if root.tag != ROOT_ELEMENT:
            raise ConfigurationError(f"root element must be <{ROOT_ELEMENT}>, found <{root.tag}>")

        working_directory = os.path.expanduser(root.get('working-directory', ''))

        databases = tuple(
            self._parse_database(element)
            for element in root.findall('./databases/database')
        )
        destinations = tuple(
            destination
            for destination in (self._parse_destination(e) for e in root.findall('./destinations/destination'))
            if destination is not None
        )
        encryptions = tuple(
            self._parse_encryption(element)
            for element in root.findall('./encryptions/encryption')
        )
        archives = tuple(
            self._parse_archive(element)
            for element in root.findall('./archives/archive')
        )

        return BackupConfiguration(
            databases=databases,
            destinations=destinations,
            encryptions=encryptions,
            archives=archives,
            working_directory=working_directory
        )

    def _required(self, element: ET.Element, attribute: str) -> str:
        value = element.get(attribute, '').strip()
        if not value:
            raise ConfigurationError(f"<{element.tag}> is missing the '{attribute}' attribute")
        return value

    def _secret(self, element: ET.Element, attribute: str, default: str = '') -> str:
        value = element.get(attribute)
        if value is None:
            return default
        return self.resolve_secret(value)

    def _port(self, element: ET.Element, default: Optional[int]) -> Optional[int]:
        value = element.get('port')
        if not value:
            return default
        try:
            return int(value)
        except ValueError:
            raise ConfigurationError(f"invalid port value '{value}' in <{element.tag} id='{element.get('id')}'>")

    def _parse_database(self, element: ET.Element) -> DatabaseSource:
        kind = self._required(element, 'kind')
        if kind not in DATABASE_KINDS:
            raise ConfigurationError(f"invalid database kind value '{kind}'.")

        return DatabaseSource(
            id=self._required(element, 'id'),
            kind=kind,
            credentials=Credentials(
                username=self._secret(element, 'username'),
                password=self._secret(element, 'password')
            ),
            host=element.get('host', 'localhost'),
            port=self._port(element, None)
        )

    def _parse_destination(self, element: ET.Element) -> Optional[Destination]:
        kind = self._required(element, 'kind')
        if kind == 'none':
            logger.debug(f"Skipping destination '{element.get('id')}' of kind none")
            return None
        if kind not in DESTINATION_KINDS:
            raise ConfigurationError(f"invalid destination kind value '{kind}'.")

        if element.get('max-archive-age'):
            logger.info(f"Destination '{element.get('id')}': max-archive-age is not supported and ignored")

        region = element.get('region', 'eu-central-1')
        endpoint_url = element.get('endpoint-url', '')
        if region in CUSTOM_REGIONS and not endpoint_url:
            endpoint_url = CUSTOM_REGIONS[region]

        destination = Destination(
            id=self._required(element, 'id'),
            kind=kind,
            path=os.path.expanduser(element.get('path', '')) if kind == 'directory' else element.get('path', ''),
            bucket=element.get('bucket', ''),
            region=region,
            prefix=element.get('prefix', ''),
            access_key=self._secret(element, 'access-key'),
            secret_key=self._secret(element, 'secret-key'),
            endpoint_url=endpoint_url,
            server=element.get('server', ''),
            port=self._port(element, 22),
            username=self._secret(element, 'username'),
            password=self._secret(element, 'password'),
            private_key=element.get('private-key', '')
        )

        if kind == 'directory' and not destination.path:
            raise ConfigurationError(f"directory destination '{destination.id}' needs a path")
        if kind == 's3' and not destination.bucket:
            raise ConfigurationError(f"s3 destination '{destination.id}' needs a bucket")
        if kind == 'ssh' and not destination.server:
            raise ConfigurationError(f"ssh destination '{destination.id}' needs a server")

        return destination

    def _parse_encryption(self, element: ET.Element) -> EncryptionRecipe:
        encryption_id = self._required(element, 'id')
        program = element.get('program', '').strip()

        if not program:
            cipher = element.get('cipher', '').strip()
            if not cipher:
                raise ConfigurationError(f"encryption '{encryption_id}' needs a program or a cipher")
            return openssl_recipe(encryption_id, cipher, self._secret(element, 'password'))

        parameters = []
        for parameter in element.findall('./parameters/parameter'):
            parameters.extend(render_parameter(parameter, self.resolve_secret))

        return EncryptionRecipe(
            id=encryption_id,
            program=program,
            parameters=tuple(parameters),
            extension=element.get('extension', '.enc')
        )

    def _parse_archive(self, element: ET.Element) -> ArchiveDefinition:
        name = self._required(element, 'name')
        validate_template(name)

        compression = element.get('compression', 'tar.gz')
        if compression not in COMPRESSION_FORMATS:
            raise ConfigurationError(f"invalid compression value '{compression}'.")

        destinations = split_list(element.get('destinations')) + split_list(element.get('destination'))

        selections = []
        for databases in element.findall('./databases'):
            selections.extend(self._parse_selections(databases))

        directories = []
        for directory in element.findall('./directories/directory'):
            directories.append(DirectorySource(
                path=self._required(directory, 'name'),
                exclude_patterns=tuple(split_list(directory.get('exclude')))
            ))

        return ArchiveDefinition(
            name=name,
            compression=compression,
            destinations=tuple(dict.fromkeys(destinations)),
            encryption=element.get('encryption') or None,
            databases=tuple(selections),
            directories=tuple(directories)
        )

    def _parse_selections(self, databases: ET.Element) -> List[DatabaseSelection]:
        """
        Group <database> selectors by db-id, in document order.

        The db-id of <databases> is the default for its children.
        """
        default_db_id = databases.get('db-id', '')
        grouped = {}

        for database in databases.findall('./database'):
            db_id = database.get('db-id', default_db_id)
            if not db_id:
                raise ConfigurationError("no db-id was given in configuration")
            name = database.get('name', '')
            if not name:
                raise ConfigurationError("no db-name was given in configuration")

            name_is_regex = parse_bool(database.get('name-is-regex'))
            if name_is_regex:
                try:
                    re.compile(name)
                except re.error as e:
                    raise ConfigurationError(f"invalid regular expression '{name}': {e}")

            grouped.setdefault(db_id, []).append(DatabaseSelector(name=name, name_is_regex=name_is_regex))

        return [DatabaseSelection(db_id=db_id, selectors=tuple(selectors)) for db_id, selectors in grouped.items()]


def load_configuration(path: str, resolve_secret: Optional[Callable] = None) -> BackupConfiguration:
    """
    Load and parse a backup configuration document.

    Args:
        path: Path of the XML document ('~' is expanded)
        resolve_secret: Optional placeholder resolver (see archivist.secrets)

    Returns:
        BackupConfiguration

    Raises:
        ConfigurationError: On any parse or validation problem
    """
    return ConfigurationLoader(resolve_secret).load(path)
