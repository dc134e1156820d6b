import os


def _env_int(name, default):
    value = os.environ.get(name)
    return int(value) if value else default


def _env_float(name, default):
    value = os.environ.get(name)
    return float(value) if value else default


class Config:
    """Base configuration"""

    DEBUG = False

    # Backup configuration document
    SETTINGS_FILE = os.environ.get('ARCHIVIST_SETTINGS') or '/etc/archivist/backup.xml'

    # Temp directories; the document's working-directory wins when set
    WORKING_DIRECTORY = os.environ.get('ARCHIVIST_WORKING_DIRECTORY') or '/var/lib/archivist/temp'

    # Logging
    LOG_DIR = os.environ.get('ARCHIVIST_LOG_DIR', '/var/log/archivist')

    # Execution
    MAX_WORKERS = _env_int('ARCHIVIST_MAX_WORKERS', 1)
    COMMAND_TIMEOUT = _env_float('ARCHIVIST_COMMAND_TIMEOUT', None)
    DELIVERY_RETRIES = _env_int('ARCHIVIST_DELIVERY_RETRIES', 0)
    DELIVERY_RETRY_DELAY = _env_float('ARCHIVIST_DELIVERY_RETRY_DELAY', 5.0)
    S3_MULTIPART_THRESHOLD = _env_int('ARCHIVIST_S3_MULTIPART_THRESHOLD', 100 * 1024 * 1024)

    # Run history (empty disables it)
    HISTORY_DATABASE_URL = os.environ.get('ARCHIVIST_HISTORY_DATABASE_URL', 'sqlite:////var/lib/archivist/history.db')

    # Secrets store
    SECRETS_FILE = os.environ.get('ARCHIVIST_SECRETS_FILE', '/etc/archivist/secrets.json')
    SECRETS_PASSPHRASE = os.environ.get('ARCHIVIST_SECRETS_PASSPHRASE')

    @classmethod
    def destination_options(cls):
        """Keyword arguments for destination handlers, keyed by kind."""
        return {
            's3': {'multipart_threshold': cls.S3_MULTIPART_THRESHOLD},
        }


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True

    # Use local data directory for development
    BASE_DIR = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    DATA_DIR = os.path.join(BASE_DIR, 'data')
    SETTINGS_FILE = os.environ.get('ARCHIVIST_SETTINGS') or os.path.join(DATA_DIR, 'backup.xml')
    WORKING_DIRECTORY = os.path.join(DATA_DIR, 'temp')
    LOG_DIR = os.path.join(DATA_DIR, 'logs')
    HISTORY_DATABASE_URL = f'sqlite:///{os.path.join(DATA_DIR, "history.db")}'
    SECRETS_FILE = os.path.join(DATA_DIR, 'secrets.json')


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False


class TestingConfig(Config):
    """Testing configuration"""
    DEBUG = True
    LOG_DIR = ''
    HISTORY_DATABASE_URL = 'sqlite:///:memory:'
    DELIVERY_RETRY_DELAY = 0


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig,
    'default': ProductionConfig
}


def get_config(config_name=None):
    """Get the configuration class for ARCHIVIST_ENV (default: production)."""
    if config_name is None:
        config_name = os.environ.get('ARCHIVIST_ENV', 'production')
    return config.get(config_name, config['default'])
