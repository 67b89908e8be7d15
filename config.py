import logging
import os
import shlex
import threading
from typing import Dict, Mapping, Optional, Tuple

import yaml
from pydantic import BaseModel, ConfigDict, ValidationError, field_validator, model_validator

logger = logging.getLogger(__name__)

DEFAULT_JOB_NAME = "default"


class ConfigError(Exception):
    """Raised when a configuration cannot be loaded or validated."""


class BackupJob(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str
    endpoint: str
    access_key: str
    secret_key: str
    region: str = ""
    bucket_name: str
    tls_insecure: bool = False
    db_host: str
    db_port: int = 3306
    db_user: str
    db_password: str = ""
    db_name: Optional[str] = None
    extra_dump_args: Tuple[str, ...] = ()

    @field_validator("name")
    @classmethod
    def _check_name(cls, value: str) -> str:
        # used as an object key prefix and in the scratch file name
        if not value or "/" in value or any(ch.isspace() for ch in value):
            raise ValueError("name must be non-empty and contain no '/' or whitespace")
        return value

    @field_validator("db_name")
    @classmethod
    def _empty_db_name(cls, value: Optional[str]) -> Optional[str]:
        return value or None


class Config(BaseModel):
    model_config = ConfigDict(frozen=True)

    backups: Tuple[BackupJob, ...] = ()

    @model_validator(mode="after")
    def _unique_names(self) -> "Config":
        seen = set()
        for job in self.backups:
            if job.name in seen:
                raise ValueError(f"duplicate backup name: {job.name}")
            seen.add(job.name)
        return self


# S3/MYSQL single-job documents written for the first release
_LEGACY_S3_KEYS = {
    "aws_url": "endpoint",
    "aws_access_key_id": "access_key",
    "aws_secret_access_key": "secret_key",
    "aws_region": "region",
    "aws_bucket": "bucket_name",
    "aws_s3_tls_insecure": "tls_insecure",
}
_LEGACY_MYSQL_KEYS = {
    "mariadb_host": "db_host",
    "mariadb_port": "db_port",
    "mariadb_user": "db_user",
    "mariadb_password": "db_password",
    "mariadb_database": "db_name",
    "mysqldump_extra_args": "extra_dump_args",
}


def _from_legacy(document: Dict) -> Dict:
    job = {"name": document.get("name", DEFAULT_JOB_NAME)}
    for section, mapping in (("S3", _LEGACY_S3_KEYS), ("MYSQL", _LEGACY_MYSQL_KEYS)):
        values = document.get(section) or {}
        if not isinstance(values, dict):
            raise ConfigError(f"Section {section} must be a mapping")
        for old, new in mapping.items():
            if old in values:
                job[new] = values[old]
    return {"backups": [job]}


def parse_config(document) -> Config:
    if document is None:
        document = {}
    if not isinstance(document, dict):
        raise ConfigError("Config document must be a mapping")

    if "S3" in document or "MYSQL" in document:
        document = _from_legacy(document)
    elif "backups" not in document and document:
        raise ConfigError("Config document has no 'backups' list")

    if document.get("backups") is None:
        document = {**document, "backups": []}

    try:
        return Config(**document)
    except ValidationError as e:
        raise ConfigError(f"Invalid config: {e}") from e


def load_config(config_path: str) -> Config:
    if not os.path.exists(config_path):
        raise ConfigError(f"Config not found at {config_path}")
    try:
        with open(config_path, "r") as f:
            document = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Cannot read config {config_path}: {e}") from e
    return parse_config(document)


_ENV_KEYS = {
    "BACKUP_NAME": "name",
    "S3_ENDPOINT": "endpoint",
    "AWS_ACCESS_KEY_ID": "access_key",
    "AWS_SECRET_ACCESS_KEY": "secret_key",
    "S3_REGION": "region",
    "S3_BUCKET_NAME": "bucket_name",
    "S3_TLS_INSECURE": "tls_insecure",
    "DB_HOST": "db_host",
    "DB_PORT": "db_port",
    "DB_USER": "db_user",
    "DB_PASSWORD": "db_password",
    "DB_NAME": "db_name",
}


def config_from_env(environ: Optional[Mapping[str, str]] = None) -> Config:
    """Build a single-job configuration from environment variables."""
    if environ is None:
        environ = os.environ

    job: Dict = {"name": DEFAULT_JOB_NAME}
    for var, field in _ENV_KEYS.items():
        value = environ.get(var)
        if value:
            job[field] = value

    extra = environ.get("MYSQLDUMP_EXTRA_ARGS")
    if extra:
        job["extra_dump_args"] = shlex.split(extra)

    try:
        return Config(backups=[BackupJob(**job)])
    except ValidationError as e:
        raise ConfigError(f"Invalid environment config: {e}") from e


class ConfigStore:
    """Holds the active configuration and swaps it atomically on reload."""

    def __init__(self, config: Optional[Config] = None, config_path: Optional[str] = None):
        self._lock = threading.Lock()
        self._config: Config = config if config is not None else Config()
        self._config_path = config_path

    @property
    def config_path(self) -> Optional[str]:
        return self._config_path

    def snapshot(self) -> Config:
        with self._lock:
            return self._config

    def replace(self, config: Config) -> None:
        with self._lock:
            self._config = config

    def reload(self) -> Config:
        if self._config_path is None:
            raise ConfigError("No config file to reload from")
        config = load_config(self._config_path)
        self.replace(config)
        logger.info("Config reloaded from %s: %d backup job(s)", self._config_path, len(config.backups))
        return config
