"""
Configuration management module for the reservation escrow service.

This module handles loading and validating environment variables,
providing a centralized Config class for all application settings.
Supports both sandbox and production payment gateway environments.
"""

import os
from decimal import Decimal, InvalidOperation
from typing import Optional, Literal
from dotenv import load_dotenv


class ConfigError(Exception):
    """Raised when configuration is invalid or missing."""
    pass


class Config:
    """
    Configuration class that loads and validates all application settings.

    All required configuration values are validated on initialization.

    Attributes:
        database_url: PostgreSQL connection string
        gateway_environment: Either 'sandbox' or 'production'
        gateway_api_key: Payment gateway API key
        gateway_timeout: Per-call gateway timeout in seconds
        seller_fee_rate: Platform fee rate charged on the seller side
        buyer_fee_rate: Service fee rate added on the buyer side
        escrow_timeout_days: Days between transfer and automatic release
        payment_deadline_hours: Hours a buyer has to pay after checkout
        vendor_approval_expiry_days: Lifetime of a vendor approval link
    """

    # Payment gateway base URLs
    GATEWAY_ENDPOINTS = {
        'sandbox': 'https://sandbox.asaas.com/api/v3',
        'production': 'https://api.asaas.com/v3',
    }

    def __init__(self, env_file: Optional[str] = None):
        """
        Initialize configuration by loading environment variables.

        Args:
            env_file: Optional path to .env file. If not provided, uses default .env

        Raises:
            ConfigError: If required configuration is missing or invalid
        """
        if env_file:
            load_dotenv(env_file)
        else:
            load_dotenv()

        # Database
        self.database_url: str = self._get_required_env('DATABASE_URL')
        self.db_pool_min_size: int = int(os.getenv('DB_POOL_MIN_SIZE', '2'))
        self.db_pool_max_size: int = int(os.getenv('DB_POOL_MAX_SIZE', '10'))

        # Payment gateway
        self.gateway_environment: Literal['sandbox', 'production'] = self._get_gateway_environment()
        self.gateway_api_key: str = self._get_required_env('GATEWAY_API_KEY')
        self.gateway_timeout: float = float(os.getenv('GATEWAY_TIMEOUT', '10'))
        self.gateway_webhook_secret: Optional[str] = os.getenv('GATEWAY_WEBHOOK_SECRET')
        self.gateway_webhook_token: Optional[str] = os.getenv('GATEWAY_WEBHOOK_TOKEN')
        self.gateway_base_url: str = os.getenv(
            'GATEWAY_BASE_URL',
            self.GATEWAY_ENDPOINTS[self.gateway_environment]
        )

        # Telegram (notification delivery, optional)
        self.telegram_bot_token: Optional[str] = os.getenv('TELEGRAM_BOT_TOKEN')
        self.admin_chat_id: Optional[str] = os.getenv('ADMIN_CHAT_ID')

        # Fees
        self.seller_fee_rate: Decimal = self._get_decimal_env('SELLER_FEE_RATE', '0.05')
        self.buyer_fee_rate: Decimal = self._get_decimal_env('BUYER_FEE_RATE', '0.05')
        self.minimum_platform_fee: Decimal = self._get_decimal_env('MINIMUM_PLATFORM_FEE', '0')

        # Lifecycle timing
        self.escrow_timeout_days: int = int(os.getenv('ESCROW_TIMEOUT_DAYS', '7'))
        self.payment_deadline_hours: int = int(os.getenv('PAYMENT_DEADLINE_HOURS', '48'))
        self.vendor_approval_expiry_days: int = int(os.getenv('VENDOR_APPROVAL_EXPIRY_DAYS', '7'))

        # Background jobs
        self.auto_release_interval_minutes: int = int(os.getenv('AUTO_RELEASE_INTERVAL_MINUTES', '15'))
        self.payout_retry_interval_minutes: int = int(os.getenv('PAYOUT_RETRY_INTERVAL_MINUTES', '10'))
        self.unpaid_expiry_interval_minutes: int = int(os.getenv('UNPAID_EXPIRY_INTERVAL_MINUTES', '30'))
        self.max_payout_attempts: int = int(os.getenv('MAX_PAYOUT_ATTEMPTS', '5'))
        self.notification_max_attempts: int = int(os.getenv('NOTIFICATION_MAX_ATTEMPTS', '3'))

        # Application Settings
        self.app_env: str = os.getenv('APP_ENV', 'development')
        self.app_debug: bool = os.getenv('APP_DEBUG', 'False').lower() in ('true', '1', 'yes')
        self.app_name: str = os.getenv('APP_NAME', 'RESERVATION_ESCROW')
        self.app_version: str = os.getenv('APP_VERSION', '1.0.0')

        # Logging Configuration
        self.log_level: str = os.getenv('LOG_LEVEL', 'INFO')
        self.log_format: str = os.getenv('LOG_FORMAT', 'text')
        self.log_file: Optional[str] = os.getenv('LOG_FILE', 'logs/escrow.log')
        self.log_max_size: int = int(os.getenv('LOG_MAX_SIZE', '10485760'))  # 10MB
        self.log_backup_count: int = int(os.getenv('LOG_BACKUP_COUNT', '5'))

        # API Configuration
        self.api_host: str = os.getenv('API_HOST', '0.0.0.0')
        self.api_port: int = int(os.getenv('API_PORT', '8000'))
        self.admin_api_key: Optional[str] = os.getenv('ADMIN_API_KEY')

        self._validate_config()

    def _get_required_env(self, key: str) -> str:
        """
        Get a required environment variable.

        Args:
            key: Environment variable name

        Returns:
            Value of the environment variable

        Raises:
            ConfigError: If the environment variable is not set
        """
        value = os.getenv(key)
        if not value:
            raise ConfigError(f"Required environment variable '{key}' is not set")
        return value

    def _get_decimal_env(self, key: str, default: str) -> Decimal:
        """Read a decimal setting, raising ConfigError on garbage."""
        raw = os.getenv(key, default)
        try:
            return Decimal(raw)
        except InvalidOperation:
            raise ConfigError(f"{key} must be a decimal number, got '{raw}'")

    def _get_gateway_environment(self) -> Literal['sandbox', 'production']:
        """
        Get and validate the gateway environment setting.

        Returns:
            Either 'sandbox' or 'production'
        """
        env = os.getenv('GATEWAY_ENVIRONMENT', 'sandbox').lower()
        if env == 'production':
            return 'production'
        return 'sandbox'

    def _validate_config(self) -> None:
        """
        Validate configuration values.

        Raises:
            ConfigError: If any configuration value is invalid
        """
        for name in ('seller_fee_rate', 'buyer_fee_rate'):
            rate = getattr(self, name)
            if not Decimal('0') <= rate < Decimal('1'):
                raise ConfigError(f"{name.upper()} must be in [0, 1), got {rate}")

        if self.minimum_platform_fee < 0:
            raise ConfigError(
                f"MINIMUM_PLATFORM_FEE must not be negative, got {self.minimum_platform_fee}"
            )

        for name in ('escrow_timeout_days', 'payment_deadline_hours',
                     'vendor_approval_expiry_days', 'max_payout_attempts',
                     'notification_max_attempts'):
            if getattr(self, name) < 1:
                raise ConfigError(f"{name.upper()} must be at least 1, got {getattr(self, name)}")

        if self.gateway_timeout <= 0:
            raise ConfigError(f"GATEWAY_TIMEOUT must be positive, got {self.gateway_timeout}")

        valid_log_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        if self.log_level.upper() not in valid_log_levels:
            raise ConfigError(
                f"LOG_LEVEL must be one of {valid_log_levels}, got '{self.log_level}'"
            )

        if self.admin_chat_id and not self.admin_chat_id.lstrip('-').isdigit():
            raise ConfigError(
                f"ADMIN_CHAT_ID must be numeric (can start with -), "
                f"got '{self.admin_chat_id}'"
            )

        if not 1 <= self.api_port <= 65535:
            raise ConfigError(f"API_PORT must be between 1 and 65535, got {self.api_port}")

    @property
    def has_telegram_config(self) -> bool:
        """Check if Telegram delivery is configured."""
        return bool(self.telegram_bot_token)

    @property
    def has_webhook_auth(self) -> bool:
        """Check if the gateway webhook can be authenticated."""
        return bool(self.gateway_webhook_secret or self.gateway_webhook_token)

    @property
    def is_production(self) -> bool:
        """Check if running against the production gateway."""
        return self.gateway_environment == 'production'

    @property
    def is_debug(self) -> bool:
        """Check if debug mode is enabled."""
        return self.app_debug

    def __repr__(self) -> str:
        """String representation of Config (hiding sensitive data)."""
        return (
            f"Config(gateway={self.gateway_environment}, "
            f"app_env={self.app_env}, "
            f"seller_fee_rate={self.seller_fee_rate}, "
            f"escrow_timeout_days={self.escrow_timeout_days})"
        )


# Singleton instance for easy access
_config_instance: Optional[Config] = None


def get_config(env_file: Optional[str] = None, reload: bool = False) -> Config:
    """
    Get or create the global Config instance.

    Args:
        env_file: Optional path to .env file
        reload: If True, force reload configuration

    Returns:
        Config instance

    Raises:
        ConfigError: If configuration is invalid

    Example:
        >>> config = get_config()
        >>> print(config.gateway_environment)
        sandbox
    """
    global _config_instance

    if _config_instance is None or reload:
        _config_instance = Config(env_file)

    return _config_instance
