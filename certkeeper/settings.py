"""
Configuration for the certificate keeper.

Settings are read once from a TOML file at startup, validated with pydantic
and passed explicitly to every component. There is no cached global copy.
"""
import logging
import tomllib
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, SecretStr, ValidationError, field_validator

from .errors import ConfigError


logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = Path("/data/cert/config/config.toml")


class LogSettings(BaseModel):
    """Process log destination."""

    logfilepath: str = "/data/cert/log/cert.log"
    maxlogsize: int = Field(default=5, ge=1)  # MB before rotation
    level: str = "INFO"

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        v = v.strip().upper()
        if v not in logging.getLevelNamesMapping():
            raise ValueError(f"Unknown log level: {v}")
        return v


class AccountSettings(BaseModel):
    """ACME account and DNS provider credentials."""

    email: str
    token: SecretStr  # Cloudflare API token with DNS:Edit permission
    staging: bool = False  # Use Let's Encrypt staging for testing
    key_path: str = ""  # ACME account key; a fresh one is made each run if empty

    @field_validator("email")
    @classmethod
    def validate_email(cls, v: str) -> str:
        v = v.strip().lower()
        if "@" not in v:
            raise ValueError("Account email must contain '@'")
        return v


class PathSettings(BaseModel):
    """Where certificate artifacts and the metadata record live."""

    cert: str
    key: str
    cacert: str
    json_path: str = Field(alias="json")

    model_config = ConfigDict(populate_by_name=True)


class DomainSettings(BaseModel):
    """The single managed domain."""

    name: str

    @field_validator("name")
    @classmethod
    def validate_domain(cls, v: str) -> str:
        v = v.strip().lower()
        # Remove protocol if accidentally included
        if v.startswith("http://"):
            v = v[7:]
        elif v.startswith("https://"):
            v = v[8:]
        v = v.rstrip("/")
        if not v:
            raise ValueError("Domain name must not be empty")
        if v.startswith("*."):
            raise ValueError("Wildcard domains are not supported")
        return v


class RenewalSettings(BaseModel):
    """Renewal policy knobs."""

    check_interval: int = Field(default=86400, gt=0)  # seconds between checks
    lead_days: int = Field(default=30, gt=0)  # renew this many days before expiry
    propagation_delay: int = Field(default=120, ge=0)  # seconds to wait for the TXT record
    dns_resolvers: list[str] = ["1.1.1.1"]  # queried for the TXT record; empty uses the system resolver
    key_type: Literal["rsa2048", "rsa4096", "ec256"] = "rsa2048"
    dns_zone_id: str = ""  # Optional, auto-detected from the domain


class CertKeeperSettings(BaseModel):
    """Complete certkeeper configuration."""

    log: LogSettings = LogSettings()
    account: AccountSettings
    path: PathSettings
    domain: DomainSettings
    renewal: RenewalSettings = RenewalSettings()


def load_settings(config_file: Path) -> CertKeeperSettings:
    """
    Load and validate settings from a TOML file.

    Raises:
        ConfigError: If the file cannot be read, parsed or validated
    """
    try:
        with open(config_file, "rb") as f:
            data = tomllib.load(f)
    except OSError as e:
        raise ConfigError(f"Cannot read config file {config_file}: {e}") from e
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Invalid TOML in {config_file}: {e}") from e

    try:
        settings = CertKeeperSettings.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration in {config_file}: {e}") from e

    logger.info(
        "[CERT-SETTINGS] Loaded settings from %s, domain: %s",
        config_file, settings.domain.name,
    )
    return settings
