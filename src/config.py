"""
Configuration module for the device plugin operator.

Loads configuration from environment variables. The application builds one
Config at startup and passes the pieces to the components that need them.
"""

import os
from dataclasses import dataclass, field
from typing import List, Optional

from models import DEFAULT_NAMESPACE

SERVICE_ACCOUNT_DIR = "/var/run/secrets/kubernetes.io/serviceaccount"
DEFAULT_TOKEN_PATH = f"{SERVICE_ACCOUNT_DIR}/token"
DEFAULT_CA_PATH = f"{SERVICE_ACCOUNT_DIR}/ca.crt"


@dataclass
class StoreConfig:
    """Connection settings for the cluster API server."""

    api_server: str = "https://kubernetes.default.svc"
    token_path: str = DEFAULT_TOKEN_PATH
    ca_path: str = DEFAULT_CA_PATH
    namespace: str = DEFAULT_NAMESPACE
    request_timeout: int = 30  # seconds
    verify_ssl: bool = True

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        api_server = os.getenv("KUBERNETES_API_SERVER", "")
        if not api_server and os.getenv("KUBERNETES_SERVICE_HOST"):
            host = os.getenv("KUBERNETES_SERVICE_HOST")
            port = os.getenv("KUBERNETES_SERVICE_PORT", "443")
            api_server = f"https://{host}:{port}"

        return cls(
            api_server=api_server or "https://kubernetes.default.svc",
            token_path=os.getenv("KUBERNETES_TOKEN_PATH", DEFAULT_TOKEN_PATH),
            ca_path=os.getenv("KUBERNETES_CA_PATH", DEFAULT_CA_PATH),
            namespace=os.getenv("OPERATOR_NAMESPACE", DEFAULT_NAMESPACE),
            request_timeout=int(os.getenv("STORE_REQUEST_TIMEOUT", "30")),
            verify_ssl=os.getenv("STORE_VERIFY_SSL", "true").lower() == "true",
        )


@dataclass
class ControllerConfig:
    """Controller reconciliation loop configuration."""

    max_concurrent_reconciles: int = 5
    resync_interval: int = 300  # seconds

    # Exponential backoff configuration
    backoff_base_delay: float = 1.0  # base delay in seconds
    backoff_max_delay: float = 300.0  # max delay in seconds
    backoff_jitter_factor: float = 0.1  # ±10% jitter

    # Transient store errors tolerated before a Degraded condition is set
    max_transient_retries: int = 5
    # Status write attempts before a conflict is handed back to the queue
    status_conflict_retries: int = 5

    # Short names of device plugin kinds to reconcile (empty = all registered)
    enabled_kinds: List[str] = field(default_factory=list)

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        enabled_kinds_str = os.getenv("ENABLED_KINDS", "")
        enabled_kinds = [k.strip() for k in enabled_kinds_str.split(",") if k.strip()]

        return cls(
            max_concurrent_reconciles=int(os.getenv("MAX_CONCURRENT_RECONCILES", "5")),
            resync_interval=int(os.getenv("RESYNC_INTERVAL", "300")),
            backoff_base_delay=float(os.getenv("BACKOFF_BASE_DELAY", "1.0")),
            backoff_max_delay=float(os.getenv("BACKOFF_MAX_DELAY", "300.0")),
            backoff_jitter_factor=float(os.getenv("BACKOFF_JITTER_FACTOR", "0.1")),
            max_transient_retries=int(os.getenv("MAX_TRANSIENT_RETRIES", "5")),
            status_conflict_retries=int(os.getenv("STATUS_CONFLICT_RETRIES", "5")),
            enabled_kinds=enabled_kinds,
        )


@dataclass
class APIConfig:
    """Health and status API server configuration."""

    host: str = "0.0.0.0"
    port: int = 8081
    log_level: str = "INFO"

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(
            host=os.getenv("API_HOST", "0.0.0.0"),
            port=int(os.getenv("API_PORT", "8081")),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
        )


@dataclass
class Config:
    """Main configuration object."""

    store: StoreConfig
    controller: ControllerConfig
    api: APIConfig

    @classmethod
    def from_env(cls):
        """Load all configuration from environment variables."""
        return cls(
            store=StoreConfig.from_env(),
            controller=ControllerConfig.from_env(),
            api=APIConfig.from_env(),
        )

    @classmethod
    def default(cls):
        """Return default configuration."""
        return cls(
            store=StoreConfig(),
            controller=ControllerConfig(),
            api=APIConfig(),
        )


def read_token(config: StoreConfig) -> Optional[str]:
    """Read the service account bearer token, if the file exists."""
    try:
        with open(config.token_path, encoding="utf-8") as f:
            return f.read().strip()
    except FileNotFoundError:
        return None
