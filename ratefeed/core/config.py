"""
Provider configuration models and loader.

This module defines the configuration schema for funders and provides
utilities for loading configs from YAML/JSON files. Credentials are never
read from config files; they come from the environment.
"""

import os
import json
import logging
from pathlib import Path
from typing import Dict, List, Optional, Any
from enum import Enum
from pydantic import BaseModel, Field, model_validator

logger = logging.getLogger(__name__)

DATA_DIR_ENV = "RATEFEED_DATA_DIR"
CONFIG_DIR_ENV = "RATEFEED_CONFIG_DIR"


class ClientType(str, Enum):
    """How a provider is driven."""
    API = "api"            # session replay against JSON/form endpoints
    SELENIUM = "selenium"  # page automation in a real browser
    FILE = "file"          # offline ratebook uploads


class RateLimitConfig(BaseModel):
    """Rate limiting and retry configuration."""
    min_delay: float = Field(default=0.5, ge=0.0, le=30.0, description="Lower bound of the inter-request pause")
    max_delay: float = Field(default=0.5, ge=0.0, le=60.0, description="Upper bound of the inter-request pause")
    delay_between_groups: float = Field(default=0.0, ge=0.0, le=120.0, description="Pause between top-level groups (makes)")
    delay_between_pages: float = Field(default=0.1, ge=0.0, le=30.0)
    max_retries: int = Field(default=3, ge=0, le=10)
    retry_delay: float = Field(default=2.0, ge=0.0, le=60.0)
    backoff_factor: float = Field(default=2.0, ge=1.0, le=10.0)
    request_timeout: float = Field(default=30.0, ge=1.0, le=300.0)
    concurrency: int = Field(default=1, ge=1, le=8)

    @model_validator(mode='after')
    def validate_band(self) -> 'RateLimitConfig':
        if self.max_delay < self.min_delay:
            raise ValueError(f"max_delay {self.max_delay} is below min_delay {self.min_delay}")
        return self


class SessionConfig(BaseModel):
    """Session lifetime settings."""
    ttl_hours: float = Field(default=8.0, gt=0, le=72)
    login_path: str = "/"


class UrlConfig(BaseModel):
    """URL configuration for a provider."""
    base_url: str = Field(..., description="Portal root URL")
    login_url: Optional[str] = Field(None, description="Page used for interactive session capture")
    api_base: Optional[str] = Field(None, description="API base URL if different from base_url")

    def join(self, path: str) -> str:
        """Join a path onto the API base (or base URL)."""
        base = (self.api_base or self.base_url).rstrip('/')
        if path.startswith('http'):
            return path
        return f"{base}/{path.lstrip('/')}"


class ProviderConfig(BaseModel):
    """
    Complete configuration for a funder.

    This defines all settings needed to drive a provider, including URLs,
    rate limits, session lifetime and supported capabilities.
    """
    # Identification
    id: str = Field(..., description="Unique provider identifier (e.g., 'lex')")
    name: str = Field(..., description="Human-readable provider name")
    currency: str = Field(default="GBP")

    client_type: ClientType = Field(default=ClientType.API)

    urls: UrlConfig
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    session: SessionConfig = Field(default_factory=SessionConfig)

    # Contract types this funder prices
    contract_types: List[str] = Field(default_factory=lambda: ["CH", "CHNM"])

    features: Dict[str, bool] = Field(default_factory=lambda: {
        "supports_quote": False,
        "supports_export": False,
        "supports_scrape": False,
        "supports_upload": False,
    })

    settings: Dict[str, Any] = Field(default_factory=dict, description="Provider-specific knobs")
    notes: Optional[str] = None

    @model_validator(mode='after')
    def validate_features(self) -> 'ProviderConfig':
        if not any(self.features.values()):
            logger.warning(f"Provider {self.id} has no capabilities enabled")
        return self

    @property
    def request_timeout(self) -> float:
        return self.rate_limit.request_timeout

    def supports(self, capability: str) -> bool:
        return self.features.get(f"supports_{capability}", False)


class Credentials(BaseModel):
    """Portal login credentials."""
    username: str
    password: str

    @classmethod
    def from_env(cls, provider: str) -> Optional['Credentials']:
        """
        Read credentials from RATEFEED_<PROVIDER>_USERNAME / _PASSWORD.

        Args:
            provider: Provider id, e.g. 'lex' or 'fleet_marque'

        Returns:
            Credentials, or None when either variable is unset
        """
        prefix = f"RATEFEED_{provider.upper()}"
        username = os.environ.get(f"{prefix}_USERNAME")
        password = os.environ.get(f"{prefix}_PASSWORD")
        if not username or not password:
            return None
        return cls(username=username, password=password)

    def __repr__(self) -> str:
        return f"Credentials(username={self.username!r}, password='***')"


def get_data_dir() -> Path:
    """Directory holding sessions, stores and audit logs."""
    return Path(os.environ.get(DATA_DIR_ENV, "output"))


class ConfigManager:
    """
    Manages provider configurations.

    Loads configs from YAML/JSON files and provides lookup by provider ID.
    File configs override the built-in defaults.
    """

    def __init__(self, config_dir: Optional[str] = None):
        """
        Initialize config manager.

        Args:
            config_dir: Directory containing config files. Defaults to
                $RATEFEED_CONFIG_DIR or 'config/' in the project root
        """
        if config_dir is None:
            config_dir = os.environ.get(CONFIG_DIR_ENV) or Path(__file__).parent.parent.parent / "config"
        self.config_dir = Path(config_dir)
        self._configs: Dict[str, ProviderConfig] = {}
        self._loaded = False

    def load_all(self) -> None:
        """Load defaults, then every configuration file in the config directory."""
        for config in get_default_configs().values():
            self._configs[config.id] = config

        if not self.config_dir.exists():
            logger.warning(f"Config directory not found: {self.config_dir}")
            self._loaded = True
            return

        for pattern in ("*.yaml", "*.yml", "*.json"):
            for filepath in sorted(self.config_dir.glob(pattern)):
                self._load_file(filepath)

        self._loaded = True
        logger.info(f"Loaded {len(self._configs)} provider configurations")

    def _load_file(self, filepath: Path) -> None:
        """Load a single config file, merging it over any default."""
        import yaml

        try:
            with open(filepath, 'r') as f:
                if filepath.suffix in ['.yaml', '.yml']:
                    data = yaml.safe_load(f)
                else:
                    data = json.load(f)
        except (OSError, ValueError, yaml.YAMLError) as e:
            logger.error(f"Error loading {filepath}: {e}")
            return

        if not data:
            return

        provider_id = data.get('id')
        base = self._configs.get(provider_id)
        if base is not None:
            data = _deep_merge(base.model_dump(mode='json'), data)

        try:
            config = ProviderConfig(**data)
        except ValueError as e:
            logger.error(f"Invalid config in {filepath.name}: {e}")
            return

        self._configs[config.id] = config
        logger.debug(f"Loaded config: {config.id} from {filepath.name}")

    def get(self, provider_id: str) -> Optional[ProviderConfig]:
        """Get configuration for a provider."""
        if not self._loaded:
            self.load_all()
        return self._configs.get(provider_id)

    def get_all(self) -> Dict[str, ProviderConfig]:
        """Get all loaded configurations."""
        if not self._loaded:
            self.load_all()
        return self._configs.copy()

    def list_providers(self) -> List[str]:
        """List all configured provider IDs."""
        if not self._loaded:
            self.load_all()
        return list(self._configs.keys())

    def register(self, config: ProviderConfig) -> None:
        """Register a provider configuration programmatically."""
        self._configs[config.id] = config

    def save_config(self, config: ProviderConfig, filepath: Optional[Path] = None) -> Path:
        """
        Save a provider configuration to file.

        Args:
            config: Configuration to save
            filepath: Optional specific path, defaults to config_dir/{id}.json

        Returns:
            Path to saved file
        """
        if filepath is None:
            filepath = self.config_dir / f"{config.id}.json"

        self.config_dir.mkdir(parents=True, exist_ok=True)

        with open(filepath, 'w') as f:
            json.dump(config.model_dump(mode='json'), f, indent=2)

        return filepath


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


# Global config manager instance
_config_manager: Optional[ConfigManager] = None


def get_config_manager() -> ConfigManager:
    """Get global config manager instance."""
    global _config_manager
    if _config_manager is None:
        _config_manager = ConfigManager()
    return _config_manager


def get_provider_config(provider_id: str) -> ProviderConfig:
    """
    Get configuration for a provider by ID.

    Falls back to the built-in default so clients always have a config.
    """
    config = get_config_manager().get(provider_id)
    if config is None:
        defaults = get_default_configs()
        if provider_id not in defaults:
            raise KeyError(f"No configuration for provider: {provider_id}")
        config = defaults[provider_id]
    return config


# === Default configurations ===

def create_lex_config() -> ProviderConfig:
    """Lex Autolease broker portal (session replay of the quote services)."""
    return ProviderConfig(
        id="lex",
        name="Lex Autolease",
        client_type=ClientType.API,
        urls=UrlConfig(
            base_url="https://associate.lexautolease.co.uk",
            login_url="https://associate.lexautolease.co.uk/",
        ),
        rate_limit=RateLimitConfig(min_delay=0.5, max_delay=0.5, max_retries=2, concurrency=1),
        session=SessionConfig(ttl_hours=8),
        contract_types=["CH", "CHNM", "PCH", "PCHNM", "SS"],
        features={
            "supports_quote": True,
            "supports_export": False,
            "supports_scrape": False,
            "supports_upload": True,
        },
        notes="Quote line state lives server-side; one worker per session",
    )


def create_ogilvie_config() -> ProviderConfig:
    """Ogilvie Fleet broker quotes (paginated export protocol)."""
    return ProviderConfig(
        id="ogilvie",
        name="Ogilvie Fleet",
        client_type=ClientType.API,
        urls=UrlConfig(
            base_url="https://www.ogilviefleet.co.uk",
            login_url="https://www.ogilviefleet.co.uk/BrokerQuotes/Account/Login",
        ),
        rate_limit=RateLimitConfig(min_delay=0.1, max_delay=0.1, delay_between_pages=0.1,
                                   max_retries=2, request_timeout=60.0),
        session=SessionConfig(ttl_hours=1, login_path="/BrokerQuotes/Account/Login"),
        contract_types=["CH", "CHNM", "SS"],
        features={
            "supports_quote": False,
            "supports_export": True,
            "supports_scrape": False,
            "supports_upload": True,
        },
        settings={"page_size": 10},
    )


def create_drivalia_config() -> ProviderConfig:
    """Drivalia broker portal (browser automation)."""
    return ProviderConfig(
        id="drivalia",
        name="Drivalia",
        client_type=ClientType.SELENIUM,
        urls=UrlConfig(
            base_url="https://www.drivalia.co.uk",
            login_url="https://www.drivalia.co.uk/",
        ),
        rate_limit=RateLimitConfig(min_delay=2.0, max_delay=4.0, max_retries=1, request_timeout=60.0),
        session=SessionConfig(ttl_hours=8),
        contract_types=["CH", "PCH"],
        features={
            "supports_quote": True,
            "supports_export": False,
            "supports_scrape": False,
            "supports_upload": False,
        },
        settings={"company_name": "", "step_timeout": 15},
    )


def create_fleet_marque_config() -> ProviderConfig:
    """Fleet Marque fleet-discount portal (nested listing scrape)."""
    return ProviderConfig(
        id="fleet_marque",
        name="Fleet Marque",
        client_type=ClientType.API,
        urls=UrlConfig(
            base_url="https://www.fleetportal.co.uk",
            login_url="https://www.fleetportal.co.uk/login.php",
        ),
        rate_limit=RateLimitConfig(min_delay=1.0, max_delay=3.0, delay_between_groups=5.0, max_retries=2),
        session=SessionConfig(ttl_hours=8, login_path="/login.php"),
        contract_types=["CH"],
        features={
            "supports_quote": False,
            "supports_export": False,
            "supports_scrape": True,
            "supports_upload": False,
        },
    )


def create_venus_config() -> ProviderConfig:
    """Venus matrix ratebooks (offline XLSX uploads)."""
    return ProviderConfig(
        id="venus",
        name="Venus",
        client_type=ClientType.FILE,
        urls=UrlConfig(base_url=""),
        contract_types=["CHNM"],
        features={
            "supports_quote": False,
            "supports_export": False,
            "supports_scrape": False,
            "supports_upload": True,
        },
    )


def create_ald_config() -> ProviderConfig:
    """ALD Automotive ratebooks (offline CSV or XLSX uploads)."""
    return ProviderConfig(
        id="ald",
        name="ALD Automotive",
        client_type=ClientType.FILE,
        urls=UrlConfig(base_url=""),
        contract_types=["CH", "CHNM", "PCH", "PCHNM"],
        features={
            "supports_quote": False,
            "supports_export": False,
            "supports_scrape": False,
            "supports_upload": True,
        },
    )


def get_default_configs() -> Dict[str, ProviderConfig]:
    """Get all default provider configurations."""
    return {
        "lex": create_lex_config(),
        "ogilvie": create_ogilvie_config(),
        "drivalia": create_drivalia_config(),
        "fleet_marque": create_fleet_marque_config(),
        "venus": create_venus_config(),
        "ald": create_ald_config(),
    }
