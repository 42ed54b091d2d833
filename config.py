"""
Configuration module for the Payment Network Router.

Loads settings from environment variables with sensible defaults.
"""

import json
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


@dataclass
class PaymentConfig:
    """Payment lifecycle configuration."""
    default_currency: str = 'CAD'
    authorization_expiry_hours: int = 168


@dataclass
class ProviderConfig:
    """A single issuer instance as configured."""
    issuer_id: str
    name: str
    base_url: str
    api_key: str


@dataclass
class IssuerConfig:
    """Issuer backend configuration."""
    default_issuer_id: str
    base_url: str
    api_key: str
    max_retries: int = 3
    retry_delay_ms: int = 500
    request_timeout: int = 30
    providers: List[ProviderConfig] = field(default_factory=list)


@dataclass
class DatabaseConfig:
    """Database connection configuration."""
    url: str


@dataclass
class WebhookConfig:
    """Webhook delivery configuration."""
    max_retries: int
    retry_delay_ms: int
    timeout_ms: int
    concurrency: int = 5
    poll_interval: float = 1.0


@dataclass
class ExpiryConfig:
    """Authorization expiry sweep configuration."""
    interval: int = 60


@dataclass
class LoggingConfig:
    """Logging configuration."""
    level: str
    file: Optional[str]


@dataclass
class ServiceConfig:
    """Service-level configuration."""
    name: str
    shutdown_timeout: int


def parse_providers(raw: str) -> List[ProviderConfig]:
    """
    Parse the ISSUER_PROVIDERS JSON list.

    Each entry accepts either ``issuerId`` or the older ``bsimId`` key.

    Args:
        raw: JSON string, e.g. '[{"issuerId": "newbank", "name": "New Bank",
             "baseUrl": "http://newbank:3001", "apiKey": "key"}]'

    Returns:
        List of provider configs

    Raises:
        ValueError: If the JSON is malformed or an entry is incomplete
    """
    try:
        entries: List[Dict[str, Any]] = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ValueError(f"ISSUER_PROVIDERS is not valid JSON: {e}") from e

    if not isinstance(entries, list):
        raise ValueError("ISSUER_PROVIDERS must be a JSON list")

    providers = []
    for entry in entries:
        if not isinstance(entry, dict):
            raise ValueError(f"Issuer provider entry must be a JSON object: {entry!r}")
        issuer_id = entry.get('issuerId') or entry.get('bsimId')
        base_url = entry.get('baseUrl')
        if not issuer_id or not base_url:
            raise ValueError(f"Issuer provider entry is missing issuerId or baseUrl: {entry}")
        providers.append(ProviderConfig(
            issuer_id=issuer_id,
            name=entry.get('name') or issuer_id,
            base_url=base_url.rstrip('/'),
            api_key=entry.get('apiKey', '')
        ))
    return providers


class Config:
    """
    Main configuration class that aggregates all config sections.

    Usage:
        from config import config

        print(config.issuer.default_issuer_id)
        print(config.webhook.timeout_ms)
    """

    def __init__(self):
        self._load_config()

    def _load_config(self):
        """Load all configuration from environment variables."""

        # Payment configuration
        self.payment = PaymentConfig(
            default_currency=os.getenv('DEFAULT_CURRENCY', 'CAD'),
            authorization_expiry_hours=int(os.getenv('AUTH_EXPIRY_HOURS', '168'))
        )

        # Issuer configuration
        default_issuer_id = os.getenv('DEFAULT_ISSUER_ID', 'bsim')
        base_url = os.getenv('ISSUER_BASE_URL', 'http://localhost:3001').rstrip('/')
        api_key = os.getenv('ISSUER_API_KEY', 'dev-payment-api-key')

        # Parse errors are reported by validate()
        self.provider_errors: List[str] = []
        providers_raw = os.getenv('ISSUER_PROVIDERS')
        if providers_raw:
            try:
                providers = parse_providers(providers_raw)
            except ValueError as e:
                self.provider_errors.append(str(e))
                providers = []
        else:
            # Single-issuer deployment
            providers = [ProviderConfig(
                issuer_id=default_issuer_id,
                name=os.getenv('ISSUER_NAME', default_issuer_id),
                base_url=base_url,
                api_key=api_key
            )]

        self.issuer = IssuerConfig(
            default_issuer_id=default_issuer_id,
            base_url=base_url,
            api_key=api_key,
            max_retries=int(os.getenv('ISSUER_MAX_RETRIES', '3')),
            retry_delay_ms=int(os.getenv('ISSUER_RETRY_DELAY_MS', '500')),
            request_timeout=int(os.getenv('ISSUER_TIMEOUT', '30')),
            providers=providers
        )

        # Database configuration
        self.database = DatabaseConfig(
            url=os.getenv('DATABASE_URL', 'sqlite:///./payment_network.db')
        )

        # Webhook configuration
        self.webhook = WebhookConfig(
            max_retries=int(os.getenv('WEBHOOK_MAX_RETRIES', '5')),
            retry_delay_ms=int(os.getenv('WEBHOOK_RETRY_DELAY_MS', '1000')),
            timeout_ms=int(os.getenv('WEBHOOK_TIMEOUT_MS', '10000')),
            concurrency=int(os.getenv('WEBHOOK_CONCURRENCY', '5')),
            poll_interval=float(os.getenv('WEBHOOK_POLL_INTERVAL', '1.0'))
        )

        # Expiry sweep configuration
        self.expiry = ExpiryConfig(
            interval=int(os.getenv('EXPIRY_CHECK_INTERVAL', '60'))
        )

        # Logging configuration
        self.logging = LoggingConfig(
            level=os.getenv('LOG_LEVEL', 'INFO'),
            file=os.getenv('LOG_FILE')
        )

        # Service configuration
        self.service = ServiceConfig(
            name=os.getenv('SERVICE_NAME', 'PaymentNetworkRouter'),
            shutdown_timeout=int(os.getenv('SHUTDOWN_TIMEOUT', '30'))
        )

    def validate(self) -> List[str]:
        """
        Validate required configuration values.

        Returns:
            List of validation error messages (empty if all valid)
        """
        errors = list(self.provider_errors)

        if not self.issuer.providers and not self.provider_errors:
            errors.append("At least one issuer provider is required")

        provider_ids = [p.issuer_id for p in self.issuer.providers]
        if self.issuer.default_issuer_id not in provider_ids:
            errors.append(
                f"DEFAULT_ISSUER_ID '{self.issuer.default_issuer_id}' "
                f"is not among configured providers"
            )

        if len(set(provider_ids)) != len(provider_ids):
            errors.append("Issuer provider ids must be unique")

        if not self.database.url:
            errors.append("DATABASE_URL is required")

        if self.payment.authorization_expiry_hours <= 0:
            errors.append("AUTH_EXPIRY_HOURS must be positive")

        if self.expiry.interval <= 0:
            errors.append("EXPIRY_CHECK_INTERVAL must be positive")

        if self.webhook.concurrency <= 0:
            errors.append("WEBHOOK_CONCURRENCY must be positive")

        if self.webhook.max_retries <= 0:
            errors.append("WEBHOOK_MAX_RETRIES must be positive")

        return errors

    def is_valid(self) -> bool:
        """Check if configuration is valid."""
        return len(self.validate()) == 0


# Global configuration instance
config = Config()
