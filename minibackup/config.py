import os

from dotenv import load_dotenv

from .utils.credentials import default_credentials_file


# Values already present in the environment take precedence over the .env file
load_dotenv(os.environ.get('ENV_PATH', '.env'), override=False)


class Config:
    """Base configuration"""

    DEBUG = False

    # Encryption (hex-encoded AES key, 16/24/32 bytes once decoded)
    AES_KEY = os.environ.get('AES_KEY', '')

    # Definitions
    BACKUP_CONFIG_PATH = os.environ.get('BACKUP_CONFIG_PATH') or '/etc/backup-tool/config.yaml'
    SERVER_CONFIG_PATH = os.environ.get('SERVER_CONFIG_PATH') or 'config/server.yaml'

    # Driver modules
    MODULES_DIR = os.environ.get('MODULES_DIR') or './modules'

    # Storage
    AWS_CREDENTIALS_FILE = os.environ.get('AWS_CREDENTIALS_FILE') or default_credentials_file()
    PROFILE_PREFIX = os.environ.get('PROFILE_PREFIX') or 'minibackup'
    UPLOAD_WORKERS = int(os.environ.get('UPLOAD_WORKERS') or 4)
    PRESIGNED_URL_TTL = int(os.environ.get('PRESIGNED_URL_TTL') or 3600)

    # Logging
    LOG_FILE = os.environ.get('LOG_FILE') or os.path.join('data', 'logs', 'minibackup.log')
    LOG_LEVEL = (os.environ.get('LOG_LEVEL') or 'info').lower()

    # Scheduler
    SCHEDULER_TIMEZONE = os.environ.get('SCHEDULER_TIMEZONE') or 'UTC'


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True

    BASE_DIR = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    BACKUP_CONFIG_PATH = os.environ.get('BACKUP_CONFIG_PATH') or os.path.join('config', 'config.yaml')
    PROFILE_PREFIX = os.environ.get('PROFILE_PREFIX') or 'dev-backup'
    LOG_FILE = os.environ.get('LOG_FILE') or os.path.join(BASE_DIR, 'data', 'logs', 'minibackup.log')


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False


class TestingConfig(Config):
    """Testing configuration"""
    TESTING = True
    DEBUG = True

    AES_KEY = '00112233445566778899aabbccddeeff00112233445566778899aabbccddeeff'
    PROFILE_PREFIX = 'test-backup'
    UPLOAD_WORKERS = 2
    LOG_FILE = None


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig,
    'default': ProductionConfig
}


def config_to_dict(config_class) -> dict:
    """Flatten a configuration class (and its bases) into a plain dict of upper-case keys."""
    return {
        key: getattr(config_class, key)
        for key in dir(config_class)
        if key.isupper()
    }
