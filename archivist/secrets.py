"""
Secret placeholders for the backup configuration.

Credential attributes in the configuration document may hold a placeholder
such as `[mysql-main]` instead of the secret itself. Placeholders resolve,
in order, from:

1. the environment variable ARCHIVIST_SECRET_<NAME> (upper case, '-' and '.'
   become '_'), then
2. the encrypted secrets file, a JSON document

       {"salt": "<base64>", "secrets": {"mysql-main": "<fernet token>", ...}}

   whose key is derived from a passphrase (see utils/crypto.py).
"""

import base64
import json
import logging
import os
import re
from typing import Dict, Optional

from cryptography.fernet import InvalidToken

from archivist.models import ConfigurationError
from archivist.utils.crypto import CryptoManager


logger = logging.getLogger(__name__)

PLACEHOLDER_PATTERN = re.compile(r'^\[([A-Za-z0-9_.-]+)\]$')
ENV_PREFIX = 'ARCHIVIST_SECRET_'


def env_name(name: str) -> str:
    return ENV_PREFIX + re.sub(r'[-.]', '_', name).upper()


def is_placeholder(value: Optional[str]) -> bool:
    return bool(value) and PLACEHOLDER_PATTERN.match(value) is not None


class SecretStore:
    """
    Fernet-encrypted JSON file of named secrets.
    """

    def __init__(self, path: str, passphrase: str):
        self.path = path
        self.passphrase = passphrase
        self.crypto = CryptoManager()
        self._secrets: Dict[str, str] = {}
        self._loaded = False

    def _load(self):
        if self._loaded:
            return

        if os.path.exists(self.path):
            try:
                with open(self.path, 'r') as f:
                    document = json.load(f)
                salt = base64.b64decode(document['salt'])
                self._secrets = dict(document.get('secrets', {}))
            except (OSError, ValueError, KeyError, TypeError) as e:
                raise ConfigurationError(f"Unable to read secrets file {self.path}: {e}")
            self.crypto.initialize(self.passphrase, salt)
        else:
            self.crypto.initialize(self.passphrase)
            self._secrets = {}

        self._loaded = True

    def names(self):
        self._load()
        return sorted(self._secrets)

    def get(self, name: str) -> Optional[str]:
        """
        Decrypt a secret.

        Returns:
            The plaintext, or None if the store has no such secret

        Raises:
            ConfigurationError: If the passphrase does not decrypt the secret
        """
        self._load()
        token = self._secrets.get(name)
        if token is None:
            return None
        try:
            return self.crypto.decrypt(token)
        except InvalidToken:
            raise ConfigurationError(f"Unable to decrypt secret '{name}': wrong passphrase or corrupt secrets file")

    def set(self, name: str, value: str):
        """Encrypt a secret and write the store back to disk."""
        self._load()
        self._secrets[name] = self.crypto.encrypt(value)
        self.save()

    def save(self):
        document = {
            'salt': base64.b64encode(self.crypto.salt).decode(),
            'secrets': self._secrets,
        }
        directory = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(directory, exist_ok=True)

        temp_path = f"{self.path}.tmp"
        with open(temp_path, 'w') as f:
            json.dump(document, f, indent=2, sort_keys=True)
        os.chmod(temp_path, 0o600)
        os.replace(temp_path, self.path)
        logger.info(f"Secrets file written: {self.path}")


class SecretResolver:
    """
    Resolves `[name]` placeholders from the environment or a SecretStore.
    """

    def __init__(self, store: Optional[SecretStore] = None, environ: Optional[Dict[str, str]] = None):
        self.store = store
        self.environ = os.environ if environ is None else environ

    def lookup(self, name: str) -> str:
        """
        Raises:
            ConfigurationError: If the secret is not defined anywhere
        """
        value = self.environ.get(env_name(name))
        if value is not None:
            return value

        if self.store is not None:
            value = self.store.get(name)
            if value is not None:
                return value

        raise ConfigurationError(f"Unknown secret '{name}' (set {env_name(name)} or add it to the secrets file)")

    def __call__(self, value: Optional[str]) -> Optional[str]:
        """Resolve a value if it is a placeholder, otherwise return it unchanged."""
        if not is_placeholder(value):
            return value
        return self.lookup(PLACEHOLDER_PATTERN.match(value).group(1))


def create_resolver(settings) -> SecretResolver:
    """
    Build the resolver for a settings class.

    The secrets file is only used when a passphrase is configured.
    """
    store = None
    if settings.SECRETS_PASSPHRASE and settings.SECRETS_FILE:
        store = SecretStore(settings.SECRETS_FILE, settings.SECRETS_PASSPHRASE)
    return SecretResolver(store)
