"""
SSL tunnel configuration.

Holds the base domain, registration service endpoint, ACME account email
and on-disk locations used by the certificate lifecycle. A TunnelConfig
value is passed explicitly to every component; nothing in the lifecycle
reads configuration from module state.
"""
import json
import logging
import os
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, field_validator


logger = logging.getLogger(__name__)

# Config file location
CONFIG_DIR = Path(os.environ.get("CONFIG_DIR", "/config"))
TUNNEL_CONFIG_FILE = CONFIG_DIR / "ssltunnel_config.json"
SSL_DIR = CONFIG_DIR / "ssl"

# ACME directory URLs
LETSENCRYPT_STAGING = "https://acme-staging-v02.api.letsencrypt.org/directory"
LETSENCRYPT_PRODUCTION = "https://acme-v02.api.letsencrypt.org/directory"


class TunnelConfig(BaseModel):
    """Configuration for tunnel subdomain registration and certificates."""

    # Shared domain the tunnel subdomains live under (e.g., mozilla-iot.org)
    base_domain: str = ""

    # Registration service base URL (e.g., https://api.mozilla-iot.org:8443)
    registration_endpoint: str = ""

    # Contact email for the ACME account
    cert_email: str = ""

    # Raise ssltunnel loggers to DEBUG
    debug: bool = False

    # ACME directory selection
    use_staging: bool = False
    acme_directory_url: str = ""  # Overrides use_staging when set

    # On-disk locations
    ssl_dir: str = str(SSL_DIR)
    webroot_path: str = str(CONFIG_DIR / "static")
    settings_file: str = str(CONFIG_DIR / "ssltunnel_settings.json")
    account_key_path: str = str(SSL_DIR / "acme_account_key.pem")

    # Deadlines (seconds)
    request_timeout: float = 30.0
    issue_timeout: float = 600.0

    # Challenge / ACME polling
    dns_propagation_delay: float = 30.0
    acme_poll_interval: float = 2.0
    acme_poll_attempts: int = 30

    # Renewal
    renew_days_before_expiry: int = 14
    renewal_check_interval: int = 86400  # 24 hours

    @field_validator("base_domain")
    @classmethod
    def validate_base_domain(cls, v: str) -> str:
        """Normalize the base domain."""
        if v:
            v = v.strip().lower().strip(".")
        return v

    @field_validator("registration_endpoint")
    @classmethod
    def validate_endpoint(cls, v: str) -> str:
        """Strip trailing slashes so paths can be appended."""
        if v:
            v = v.strip().rstrip("/")
        return v

    @field_validator("cert_email")
    @classmethod
    def validate_email(cls, v: str) -> str:
        """Validate email format."""
        if v:
            v = v.strip().lower()
        return v

    @property
    def directory_url(self) -> str:
        """ACME directory URL to use."""
        if self.acme_directory_url:
            return self.acme_directory_url
        return LETSENCRYPT_STAGING if self.use_staging else LETSENCRYPT_PRODUCTION

    @property
    def installation_key(self) -> str:
        """Identity of the installation this config manages."""
        return str(Path(self.settings_file).resolve())

    def full_domain(self, subdomain: str) -> str:
        """Build the full domain name for a subdomain."""
        return f"{subdomain}.{self.base_domain}"

    def is_configured(self) -> bool:
        """Check that the values needed for registration are present."""
        return bool(self.base_domain and self.registration_endpoint and self.cert_email)


# In-memory cache of the tunnel config
_cached_tunnel_config: Optional[TunnelConfig] = None


def load_tunnel_config(path: Optional[Path] = None) -> TunnelConfig:
    """Load tunnel configuration from file or return defaults."""
    global _cached_tunnel_config

    if _cached_tunnel_config is not None and path is None:
        return _cached_tunnel_config

    config_file = path or TUNNEL_CONFIG_FILE
    logger.info("[SSLTUNNEL-CONFIG] Loading tunnel config from %s", config_file)

    config = None
    if config_file.exists():
        try:
            data = json.loads(config_file.read_text())
            config = TunnelConfig(**data)
            logger.info(
                "[SSLTUNNEL-CONFIG] Loaded tunnel config, base domain: %s, staging: %s",
                config.base_domain, config.use_staging,
            )
        except Exception as e:
            logger.error("[SSLTUNNEL-CONFIG] Failed to load tunnel config: %s", e)

    if config is None:
        logger.info("[SSLTUNNEL-CONFIG] Using default tunnel config (no valid config file found)")
        config = TunnelConfig()

    if path is None:
        _cached_tunnel_config = config
    return config


def clear_tunnel_config_cache() -> None:
    """Clear the cached tunnel config (forces reload)."""
    global _cached_tunnel_config
    _cached_tunnel_config = None
    logger.info("[SSLTUNNEL-CONFIG] Tunnel config cache cleared")


def apply_log_level(config: TunnelConfig) -> None:
    """Set the ssltunnel logger level from the config's debug flag."""
    level = logging.DEBUG if config.debug else logging.INFO
    logging.getLogger("ssltunnel").setLevel(level)
