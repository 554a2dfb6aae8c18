import os
import tempfile
from enum import Enum
from dataclasses import dataclass, field
from typing import List, Optional


class Config:
    """Base configuration"""

    # Directories
    BACKUP_DIR = os.environ.get('DVOM_BACKUP_DIR') or './backups'
    TEMP_DIR = os.environ.get('DVOM_TEMP_DIR') or tempfile.gettempdir()
    LOG_DIR = os.environ.get('DVOM_LOG_DIR') or os.path.join(os.path.expanduser('~'), '.dvom', 'logs')

    # Sandbox used to archive and extract volume contents
    SANDBOX_IMAGE = os.environ.get('DVOM_SANDBOX_IMAGE') or 'alpine:latest'

    # Hard cap on bytes copied out of a sandbox or extracted from an archive (100GB)
    MAX_COPY_SIZE = int(os.environ.get('DVOM_MAX_COPY_SIZE') or 100 * 1024 * 1024 * 1024)

    # Grace period before a stopped container is killed
    STOP_TIMEOUT = int(os.environ.get('DVOM_STOP_TIMEOUT') or 30)

    # Storage defaults
    STORAGE = os.environ.get('DVOM_STORAGE') or 'local'
    S3_REGION = os.environ.get('DVOM_S3_REGION') or 'us-east-1'

    DEBUG = False


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True

    # Keep everything inside the checkout
    BASE_DIR = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    DATA_DIR = os.path.join(BASE_DIR, 'data')
    BACKUP_DIR = os.path.join(DATA_DIR, 'backups')
    LOG_DIR = os.path.join(DATA_DIR, 'logs')


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'default': ProductionConfig
}


def get_config(config_name: str = None):
    """
    Get the configuration class for an environment.

    Args:
        config_name: 'development' or 'production' (default: $DVOM_ENV)

    Returns:
        Config subclass
    """
    if config_name is None:
        config_name = os.environ.get('DVOM_ENV', 'production')
    return config.get(config_name, config['default'])


class StorageKind(Enum):
    """Supported storage backends."""
    LOCAL = 'local'
    S3 = 's3'
    GCS = 'gcs'

    @classmethod
    def parse(cls, value: str) -> 'StorageKind':
        try:
            return cls(value.lower())
        except ValueError:
            valid = ', '.join(kind.value for kind in cls)
            raise ValueError(f"Unsupported storage type: {value}. Valid options: {valid}")


@dataclass
class StorageConfig:
    """Backend selection and credentials for one invocation."""
    kind: StorageKind = StorageKind.LOCAL

    # local
    base_path: str = Config.BACKUP_DIR

    # s3
    s3_bucket: Optional[str] = None
    s3_region: str = Config.S3_REGION
    s3_endpoint: Optional[str] = None
    s3_access_key: Optional[str] = None
    s3_secret_key: Optional[str] = None

    # gcs
    gcs_bucket: Optional[str] = None
    gcs_project: Optional[str] = None
    gcs_credentials: Optional[str] = None


@dataclass
class RunConfig:
    """
    Options for a single backup/restore invocation.

    Built once by the CLI (or a test) and handed to the executor, so nothing
    depends on module-level flag state.
    """
    storage: StorageConfig = field(default_factory=StorageConfig)
    verbose: bool = False
    quiet: bool = False

    # Encryption
    encrypt: bool = False
    password: Optional[str] = None

    # Container management
    stop_containers: List[str] = field(default_factory=list)
    stop_timeout: int = Config.STOP_TIMEOUT

    # Restore safety
    dry_run: bool = False
    force: bool = False

    # Resources
    temp_dir: str = Config.TEMP_DIR
    max_copy_size: int = Config.MAX_COPY_SIZE
    timeout: Optional[float] = None
