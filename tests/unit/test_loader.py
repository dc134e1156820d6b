"""
Unit tests for the configuration document loader (archivist/loader.py).
"""

import xml.etree.ElementTree as ET

import pytest

from archivist.loader import ConfigurationLoader, load_configuration, parse_bool, render_parameter
from archivist.models import ConfigurationError, ConfigReferenceError
from archivist.backup.templating import TemplateError
from archivist.secrets import SecretResolver


DOCUMENT = """
<backup-configuration working-directory="/var/tmp/archivist">
    <databases>
        <database id="main" kind="mysql" username="backup" password="[mysql-main]" host="db1" port="3307"/>
        <database id="docs" kind="mongodb"/>
    </databases>
    <destinations>
        <destination id="local" kind="directory" path="/srv/backups" max-archive-age="30d"/>
        <destination id="offsite" kind="s3" bucket="backups" region="eu-west-1" prefix="nightly"/>
        <destination id="storj" kind="s3" bucket="backups" region="storj-eu1"/>
        <destination id="remote" kind="ssh" server="backup.example.com" username="archivist" path="/srv"/>
        <destination id="disabled" kind="none"/>
    </destinations>
    <encryptions>
        <encryption id="legacy" cipher="aes-256-cbc" password="[enc]"/>
        <encryption id="gpg" program="gpg" extension=".gpg">
            <parameters>
                <parameter longname="batch"/>
                <parameter longname="passphrase" value="[enc]" assign-sign=" "/>
                <parameter longname="output" value="{output}" assign-sign=" "/>
                <parameter shortname="c" value="{filename}"/>
            </parameters>
        </encryption>
    </encryptions>
    <archives>
        <archive name="db-{date:year}{date:month}{date:day}" compression="tar.bz2" destination="local,offsite" encryption="legacy">
            <databases db-id="main">
                <database name="*"/>
                <database name="^shop_.*$" name-is-regex="yes"/>
                <database name="orders" db-id="docs"/>
            </databases>
        </archive>
        <archive name="etc" compression="zip" destinations="remote">
            <directories>
                <directory name="/etc/nginx" exclude="*.bak, *.swp"/>
            </directories>
        </archive>
    </archives>
</backup-configuration>
"""


@pytest.fixture
def resolver():
    return SecretResolver(environ={'ARCHIVIST_SECRET_MYSQL_MAIN': 'db-pass', 'ARCHIVIST_SECRET_ENC': 'enc-pass'})


@pytest.fixture
def configuration(resolver):
    return ConfigurationLoader(resolver).loads(DOCUMENT)


class TestConfigurationLoader:
    """Test parsing of a complete document."""

    def test_working_directory(self, configuration):
        assert configuration.working_directory == '/var/tmp/archivist'

    def test_databases(self, configuration):
        """Test database sources with resolved secrets."""
        main = configuration.database('main')

        assert main.kind == 'mysql'
        assert main.host == 'db1'
        assert main.port == 3307
        assert main.credentials.username == 'backup'
        assert main.credentials.password == 'db-pass'
        assert configuration.database('docs').host == 'localhost'

    def test_destinations(self, configuration):
        """Test destinations of every kind; kind none is skipped."""
        assert [d.id for d in configuration.destinations] == ['local', 'offsite', 'storj', 'remote']
        offsite = configuration.destination('offsite')
        assert offsite.bucket == 'backups'
        assert offsite.region == 'eu-west-1'
        assert offsite.prefix == 'nightly'
        assert configuration.destination('storj').endpoint_url == 'https://gateway.storjshare.io'
        assert configuration.destination('remote').server == 'backup.example.com'
        assert configuration.destination('remote').port == 22

    def test_legacy_encryption(self, configuration):
        """Test cipher/password encryptions become the openssl recipe."""
        recipe = configuration.encryption('legacy')

        assert recipe.program == 'openssl'
        assert recipe.parameters == (
            'aes-256-cbc', '-pbkdf2', '-in', '{filename}', '-out', '{filename}.enc', '-k', 'enc-pass'
        )

    def test_program_encryption(self, configuration):
        """Test parameters are rendered in order with their assign signs."""
        recipe = configuration.encryption('gpg')

        assert recipe.program == 'gpg'
        assert recipe.extension == '.gpg'
        assert recipe.parameters == (
            '--batch', '--passphrase', 'enc-pass', '--output', '{output}', '-c', '{filename}'
        )

    def test_archives(self, configuration):
        """Test archive attributes and selectors."""
        nightly, etc = configuration.archives

        assert nightly.name == 'db-{date:year}{date:month}{date:day}'
        assert nightly.compression == 'tar.bz2'
        assert nightly.destinations == ('local', 'offsite')
        assert nightly.encryption == 'legacy'
        assert [s.db_id for s in nightly.databases] == ['main', 'docs']
        main_selectors = nightly.databases[0].selectors
        assert [(s.name, s.name_is_regex) for s in main_selectors] == [('*', False), ('^shop_.*$', True)]
        assert nightly.databases[1].selectors[0].name == 'orders'

        assert etc.destinations == ('remote',)
        assert etc.encryption is None
        assert etc.directories[0].path == '/etc/nginx'
        assert etc.directories[0].exclude_patterns == ('*.bak', '*.swp')

    def test_document_validates(self, configuration):
        """Test the sample document has no dangling references."""
        configuration.validate()

    def test_load_file(self, tmp_path, resolver):
        """Test loading from a file path."""
        path = tmp_path / 'backup.xml'
        path.write_text(DOCUMENT)

        configuration = load_configuration(str(path), resolve_secret=resolver)

        assert len(configuration.archives) == 2


class TestConfigurationErrors:
    """Test invalid documents."""

    def wrap(self, body):
        return f'<backup-configuration working-directory="/tmp">{body}</backup-configuration>'

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationError, match="does not exist"):
            load_configuration(str(tmp_path / 'missing.xml'))

    def test_malformed_xml(self):
        with pytest.raises(ConfigurationError, match="XML error"):
            ConfigurationLoader().loads('<backup-configuration>')

    def test_wrong_root(self):
        with pytest.raises(ConfigurationError, match="root element"):
            ConfigurationLoader().loads('<configuration/>')

    def test_invalid_database_kind(self):
        with pytest.raises(ConfigurationError, match="invalid database kind value 'oracle'"):
            ConfigurationLoader().loads(self.wrap('<databases><database id="x" kind="oracle"/></databases>'))

    def test_invalid_destination_kind(self):
        with pytest.raises(ConfigurationError, match="invalid destination kind value 'ftp'"):
            ConfigurationLoader().loads(self.wrap('<destinations><destination id="x" kind="ftp"/></destinations>'))

    def test_invalid_compression(self):
        body = '<archives><archive name="a" compression="rar" destination="x"/></archives>'
        with pytest.raises(ConfigurationError, match="invalid compression value 'rar'"):
            ConfigurationLoader().loads(self.wrap(body))

    def test_invalid_template(self):
        body = '<archives><archive name="a-{date:decade}" destination="x"/></archives>'
        with pytest.raises(TemplateError):
            ConfigurationLoader().loads(self.wrap(body))

    def test_invalid_regex(self):
        body = (
            '<archives><archive name="a" destination="x">'
            '<databases db-id="main"><database name="shop(" name-is-regex="true"/></databases>'
            '</archive></archives>'
        )
        with pytest.raises(ConfigurationError, match="invalid regular expression"):
            ConfigurationLoader().loads(self.wrap(body))

    def test_selector_without_db_id(self):
        body = '<archives><archive name="a" destination="x"><databases><database name="shop"/></databases></archive></archives>'
        with pytest.raises(ConfigurationError, match="no db-id"):
            ConfigurationLoader().loads(self.wrap(body))

    def test_encryption_without_program_or_cipher(self):
        with pytest.raises(ConfigurationError, match="needs a program or a cipher"):
            ConfigurationLoader().loads(self.wrap('<encryptions><encryption id="e"/></encryptions>'))

    def test_unknown_secret(self):
        body = '<databases><database id="x" kind="mysql" password="[nope]"/></databases>'
        with pytest.raises(ConfigurationError, match="Unknown secret 'nope'"):
            ConfigurationLoader(SecretResolver(environ={})).loads(self.wrap(body))

    def test_duplicate_ids_reported_by_validate(self):
        body = (
            '<databases><database id="x" kind="mysql"/><database id="x" kind="postgresql"/></databases>'
        )
        configuration = ConfigurationLoader().loads(self.wrap(body))

        with pytest.raises(ConfigReferenceError, match="the database-id 'x' already exists"):
            configuration.validate()

    def test_dangling_destination_reported_by_validate(self):
        body = '<archives><archive name="a" destination="missing"/></archives>'
        configuration = ConfigurationLoader().loads(self.wrap(body))

        with pytest.raises(ConfigReferenceError, match="destination 'missing' is not declared"):
            configuration.validate()


class TestHelpers:
    """Test parse_bool and render_parameter."""

    @pytest.mark.parametrize("value", ['1', 'true', 'yes', 'on', 'enabled', 'TRUE', ' Yes '])
    def test_parse_bool_true(self, value):
        assert parse_bool(value)

    @pytest.mark.parametrize("value", [None, '', '0', 'false', 'no', 'off', 'disabled'])
    def test_parse_bool_false(self, value):
        assert not parse_bool(value)

    @pytest.mark.parametrize("xml,tokens", [
        ('<parameter longname="out" value="x"/>', ['--out=x']),
        ('<parameter longname="out" value="x" assign-sign=" "/>', ['--out', 'x']),
        ('<parameter longname="verbose"/>', ['--verbose']),
        ('<parameter shortname="o" value="x"/>', ['-o', 'x']),
        ('<parameter value="x"/>', ['x']),
    ])
    def test_render_parameter(self, xml, tokens):
        assert render_parameter(ET.fromstring(xml)) == tokens

    def test_render_empty_parameter(self):
        with pytest.raises(ConfigurationError):
            render_parameter(ET.fromstring('<parameter/>'))
