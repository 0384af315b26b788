"""
Configuration module for the SopsSecret operator.

Loads configuration from environment variables.
"""

import logging
import os
import tempfile
from dataclasses import dataclass, field
from typing import List, Optional

logger = logging.getLogger(__name__)

_TRUE_VALUES = ("1", "t", "T", "TRUE", "true", "True")
_FALSE_VALUES = ("0", "f", "F", "FALSE", "false", "False")


def parse_bool(value: str) -> bool:
    """
    Parse a boolean the way Go's strconv.ParseBool does.

    Raises:
        ValueError: If the value is not one of the accepted spellings.
    """
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    raise ValueError(f"invalid boolean value: {value!r}")


def env_flag(name: str, default: bool = False) -> bool:
    """Read a boolean switch, falling back to the default on garbage input."""
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return parse_bool(raw)
    except ValueError:
        logger.warning(f"Ignoring unparsable {name}={raw!r}, using {default}")
        return default


@dataclass
class ControllerConfig:
    """Work queue and retry configuration."""

    max_concurrent_reconciles: int = 5
    reconcile_timeout: float = 120.0  # seconds

    # Exponential backoff configuration
    backoff_base_delay: float = 5.0  # base delay in seconds
    backoff_max_delay: float = 300.0  # max delay in seconds
    backoff_jitter_factor: float = 0.1  # ±10% jitter

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(
            max_concurrent_reconciles=int(os.getenv("MAX_CONCURRENT_RECONCILES", "5")),
            reconcile_timeout=float(os.getenv("RECONCILE_TIMEOUT", "120")),
            backoff_base_delay=float(os.getenv("BACKOFF_BASE_DELAY", "5")),
            backoff_max_delay=float(os.getenv("BACKOFF_MAX_DELAY", "300")),
            backoff_jitter_factor=float(os.getenv("BACKOFF_JITTER_FACTOR", "0.1")),
        )


@dataclass
class KubernetesConfig:
    """Cluster access and watch scope."""

    # Empty = cluster scope
    watch_namespaces: List[str] = field(default_factory=list)
    standalone: bool = False
    peering_name: Optional[str] = None

    @property
    def clusterwide(self) -> bool:
        return not self.watch_namespaces

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        watch_namespace = os.getenv("WATCH_NAMESPACE", "")
        namespaces = [ns.strip() for ns in watch_namespace.split(",") if ns.strip()]
        return cls(
            watch_namespaces=namespaces,
            standalone=env_flag("STANDALONE", False),
            peering_name=os.getenv("PEERING_NAME") or None,
        )


@dataclass
class FinalizerConfig:
    """Cluster-wide finalizer escape hatch."""

    disable_finalizers: bool = False

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(disable_finalizers=env_flag("DISABLE_FINALIZERS", False))


@dataclass
class DecryptConfig:
    """sops invocation and gpg session keep-alive configuration."""

    sops_binary: str = "sops"
    gpg_binary: str = "gpg"
    passphrase: str = field(default="", repr=False)  # Never log passphrase
    keepalive_interval: float = 540.0  # gpg default-cache-ttl is 600 seconds
    tmp_cleanup_age: float = 1800.0
    tmp_dir: str = field(default_factory=tempfile.gettempdir)

    @property
    def keepalive_enabled(self) -> bool:
        return bool(self.passphrase)

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(
            sops_binary=os.getenv("SOPS_BINARY", "sops"),
            gpg_binary=os.getenv("GPG_BINARY", "gpg"),
            passphrase=os.getenv("PASSPHRASE", ""),
            keepalive_interval=float(os.getenv("KEEPALIVE_INTERVAL", "540")),
            tmp_cleanup_age=float(os.getenv("TMP_CLEANUP_AGE", "1800")),
            tmp_dir=os.getenv("TMP_DIR", tempfile.gettempdir()),
        )


@dataclass
class APIConfig:
    """Health API server configuration."""

    host: str = "0.0.0.0"
    port: int = 8080
    log_level: str = "INFO"

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(
            host=os.getenv("API_HOST", "0.0.0.0"),
            port=int(os.getenv("API_PORT", "8080")),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
        )


@dataclass
class Config:
    """Main configuration object."""

    controller: ControllerConfig
    kubernetes: KubernetesConfig
    finalizers: FinalizerConfig
    decrypt: DecryptConfig
    api: APIConfig

    @classmethod
    def from_env(cls):
        """Load all configuration from environment variables."""
        return cls(
            controller=ControllerConfig.from_env(),
            kubernetes=KubernetesConfig.from_env(),
            finalizers=FinalizerConfig.from_env(),
            decrypt=DecryptConfig.from_env(),
            api=APIConfig.from_env(),
        )

    @classmethod
    def default(cls):
        """Return default configuration."""
        return cls(
            controller=ControllerConfig(),
            kubernetes=KubernetesConfig(),
            finalizers=FinalizerConfig(),
            decrypt=DecryptConfig(),
            api=APIConfig(),
        )


# Global config instance
config: Optional[Config] = None


def load_config() -> Config:
    """Load configuration (singleton pattern)."""
    global config
    if config is None:
        config = Config.from_env()
    return config


def get_config() -> Config:
    """Get the current configuration."""
    if config is None:
        return load_config()
    return config


def reset_config() -> None:
    """Reset configuration (mainly for testing)."""
    global config
    config = None
