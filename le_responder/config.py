"""Configuration loading.

The daemon is configured from a YAML document. A handful of values can be
overridden from the environment (loaded from .env at startup):

    LE_RESPONDER_CONFIG  path to the YAML document (default: config.yml)
    REDIS_URL            overrides data.redis_url
    LOG_LEVEL            logging level (default: INFO)
"""

import os
from typing import Dict, List, Optional
from urllib.parse import urlparse

import yaml
from pydantic import BaseModel, Field, ValidationError

from .errors import ConfigurationError

SOURCE_TYPE_ACME = "acme"
SOURCE_TYPE_SELF_SIGNED = "self-signed"


class SourceConfig(BaseModel):
    """One configured certificate source."""
    type: str
    url: str = ""
    email: str = ""
    private_key: str = ""
    days: int = 365


class BootstrapConfig(BaseModel):
    source: str = ""


class DaemonSettings(BaseModel):
    """Renewal schedule settings."""
    days_before: int = 0
    period: int = 0
    bootstrap: BootstrapConfig = Field(default_factory=BootstrapConfig)


class DataConfig(BaseModel):
    redis_url: str = "redis://localhost:6379/0"


class ResponderServerConfig(BaseModel):
    port: int = 8080


class AdminServerConfig(BaseModel):
    external_url: str = ""


class ServersConfig(BaseModel):
    acme_responder: ResponderServerConfig = Field(default_factory=ResponderServerConfig)
    admin_ui: AdminServerConfig = Field(default_factory=AdminServerConfig)


class BucketConfig(BaseModel):
    """S3 destination for the certificate bundle."""
    region: str
    bucket: str
    object: str
    access_key: str = ""
    access_secret: str = ""


class OutputConfig(BaseModel):
    s3: List[BucketConfig] = Field(default_factory=list)


class AppConfig(BaseModel):
    """Complete daemon configuration."""
    sources: Dict[str, SourceConfig] = Field(default_factory=dict)
    daemon: DaemonSettings = Field(default_factory=DaemonSettings)
    data: DataConfig = Field(default_factory=DataConfig)
    servers: ServersConfig = Field(default_factory=ServersConfig)
    output: OutputConfig = Field(default_factory=OutputConfig)

    @property
    def our_hostname(self) -> str:
        """Hostname of the admin listener, used in a number of places."""
        hostname = urlparse(self.servers.admin_ui.external_url).hostname or ""
        if not hostname:
            raise ConfigurationError("admin external url must be specified")
        return hostname


def get_log_level() -> str:
    return os.getenv('LOG_LEVEL', 'INFO').upper()


def get_config_path() -> str:
    return os.getenv('LE_RESPONDER_CONFIG', 'config.yml')


def parse_config(document: str) -> AppConfig:
    """Parse and validate a YAML configuration document."""
    try:
        data = yaml.safe_load(document) or {}
    except yaml.YAMLError as e:
        raise ConfigurationError(f"invalid yaml: {e}") from e
    if not isinstance(data, dict):
        raise ConfigurationError("configuration must be a mapping")

    try:
        config = AppConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigurationError(f"invalid configuration: {e}") from e

    redis_url = os.getenv('REDIS_URL')
    if redis_url:
        config.data.redis_url = redis_url

    # Fail early if the admin url is unusable
    config.our_hostname
    return config


def load_config(path: Optional[str] = None) -> AppConfig:
    """Load configuration from a YAML file."""
    path = path or get_config_path()
    if not path:
        raise ConfigurationError("must specify a config path")
    try:
        with open(path, 'r') as f:
            document = f.read()
    except OSError as e:
        raise ConfigurationError(f"cannot read config {path}: {e}") from e
    return parse_config(document)
