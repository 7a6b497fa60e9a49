"""
Configuration settings for the MenuScan application.
"""

import os
import secrets
from typing import Dict, Any, List, Optional
import logging

from dotenv import load_dotenv

from menuscan.models.data_models import AnalysisConfiguration

# Load environment variables from .env file
load_dotenv()

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "claude-3-5-sonnet-latest"

# Generated once per process so every client built in development shares it
_DEVELOPMENT_SIGNING_KEY = secrets.token_hex(32)


class SecurityConfig:
    """Security-focused configuration management."""

    @staticmethod
    def get_secret_key() -> str:
        """
        Get or generate a secure secret key.

        Returns:
            Secure secret key for Flask sessions
        """
        secret_key = os.environ.get('SECRET_KEY')

        if not secret_key:
            secret_key = secrets.token_urlsafe(32)
            logger.warning("No SECRET_KEY found in environment. Generated temporary key for this session.")

        return secret_key

    @staticmethod
    def validate_api_key(key_name: str, api_key: Optional[str]) -> bool:
        """
        Validate that an API key is present and has minimum security requirements.

        Args:
            key_name: Name of the API key for logging
            api_key: The API key to validate

        Returns:
            True if key is valid, False otherwise
        """
        if not api_key:
            logger.warning(f"{key_name} not configured")
            return False

        if len(api_key) < 10:
            logger.error(f"{key_name} appears to be too short or invalid")
            return False

        placeholder_values = ['your-api-key-here', 'change-me', 'placeholder', 'xxxxxxxx']
        if any(placeholder in api_key.lower() for placeholder in placeholder_values):
            logger.error(f"{key_name} appears to be a placeholder value")
            return False

        return True

    @staticmethod
    def get_cors_origins(environment: str) -> List[str]:
        """
        Get allowed CORS origins from environment.

        Returns:
            List of allowed origins
        """
        cors_origins = os.environ.get('CORS_ORIGINS', '')

        if cors_origins:
            origins = [origin.strip() for origin in cors_origins.split(',')]
            return [origin for origin in origins if origin]

        if environment == 'development':
            return ['http://localhost:3000', 'http://localhost:5000', 'http://127.0.0.1:5000']
        if environment == 'production':
            return []  # Must be explicitly configured
        return ['*']

    @staticmethod
    def parse_pins(value: str) -> List[str]:
        """Split MENU_PINNED_CERTS into "sha256/<base64>" entries, dropping malformed ones."""
        pins = []
        for pin in value.split(','):
            pin = pin.strip()
            if not pin:
                continue
            if not pin.startswith('sha256/') or len(pin) <= len('sha256/'):
                logger.error("Ignoring malformed certificate pin (expected sha256/<base64>)")
                continue
            pins.append(pin)
        return pins


def mask_key(key: Optional[str]) -> str:
    if not key:
        return "Not configured"
    if len(key) <= 8:
        return "*" * len(key)
    return key[:4] + "*" * (len(key) - 8) + key[-4:]


class Config:
    """Base configuration class."""

    ENVIRONMENT = 'development'
    DEBUG = False
    TESTING = False

    # Flask settings
    MAX_CONTENT_LENGTH = 16 * 1024 * 1024  # 16MB max upload
    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = 'Lax'
    ALLOWED_EXTENSIONS = {'png', 'jpg', 'jpeg', 'webp'}

    # Rate limiting for the HTTP surface
    RATELIMIT_STORAGE_URI = 'memory://'
    RATELIMIT_DEFAULT = "100 per hour"

    REQUEST_TIMEOUT = 30.0  # per-request socket timeout, seconds

    def __init__(self):
        """Read settings from the environment and validate them."""
        self.SECRET_KEY = SecurityConfig.get_secret_key()
        self.SESSION_COOKIE_SECURE = self.ENVIRONMENT == 'production'
        self.CORS_ORIGINS = SecurityConfig.get_cors_origins(self.ENVIRONMENT)

        self.MENU_API_KEY = os.environ.get('MENU_API_KEY', '')
        self.MENU_AI_MODEL = os.environ.get('MENU_AI_MODEL', DEFAULT_MODEL)
        self.MENU_API_HOST = os.environ.get('MENU_API_HOST', 'api.anthropic.com').strip().lower()
        self.MENU_API_PATH_PREFIX = os.environ.get('MENU_API_PATH_PREFIX', '/v1/')
        self.MENU_API_VERSION = os.environ.get('MENU_API_VERSION', '2023-06-01')
        self.MENU_SIGNING_KEY = os.environ.get('MENU_SIGNING_KEY', '')
        self.MENU_PINNED_CERTS = SecurityConfig.parse_pins(os.environ.get('MENU_PINNED_CERTS', ''))
        self.MENU_RATE_LIMIT = self._int_env('MENU_RATE_LIMIT', 20)
        self.MENU_ANALYSIS_MODE = os.environ.get('MENU_ANALYSIS_MODE', 'balanced')

        self._validate_environment()

        if not self.MENU_SIGNING_KEY:
            self.MENU_SIGNING_KEY = _DEVELOPMENT_SIGNING_KEY
            logger.warning("No MENU_SIGNING_KEY set. Using a per-process development key.")

    @staticmethod
    def _int_env(name: str, default: int) -> int:
        value = os.environ.get(name)
        if not value:
            return default
        try:
            parsed = int(value)
        except ValueError:
            raise ValueError(f"{name} must be an integer")
        if parsed <= 0:
            raise ValueError(f"{name} must be positive")
        return parsed

    def _validate_environment(self) -> None:
        """Validate environment configuration and log warnings."""
        SecurityConfig.validate_api_key('MENU_API_KEY', self.MENU_API_KEY)

        if not self.MENU_API_PATH_PREFIX.startswith('/'):
            raise ValueError("MENU_API_PATH_PREFIX must start with '/'")

        # Raises ValueError for an unknown mode
        AnalysisConfiguration.from_mode(self.MENU_ANALYSIS_MODE)

        if not self.MENU_PINNED_CERTS:
            logger.warning("MENU_PINNED_CERTS not configured - certificate pinning is permissive")

    @property
    def ai_configured(self) -> bool:
        return bool(self.MENU_API_KEY)

    def analysis_configuration(self) -> AnalysisConfiguration:
        return AnalysisConfiguration.from_mode(self.MENU_ANALYSIS_MODE)

    def get_api_config(self) -> Dict[str, Any]:
        """
        Get API configuration without exposing sensitive keys.

        Returns:
            Dictionary with API configuration status
        """
        return {
            'ai_analysis_configured': self.ai_configured,
            'model': self.MENU_AI_MODEL,
            'trusted_host': self.MENU_API_HOST,
            'certificate_pinning': bool(self.MENU_PINNED_CERTS),
            'analysis_mode': self.MENU_ANALYSIS_MODE,
            'cors_origins': self.CORS_ORIGINS,
        }

    def mask_sensitive_config(self) -> Dict[str, Any]:
        """
        Get configuration with sensitive values masked for logging/debugging.

        Returns:
            Dictionary with masked sensitive values
        """
        return {
            'SECRET_KEY': mask_key(self.SECRET_KEY),
            'MENU_API_KEY': mask_key(self.MENU_API_KEY),
            'MENU_SIGNING_KEY': mask_key(self.MENU_SIGNING_KEY),
            'MENU_AI_MODEL': self.MENU_AI_MODEL,
            'MENU_API_HOST': self.MENU_API_HOST,
            'MENU_PINNED_CERTS': len(self.MENU_PINNED_CERTS),
            'MENU_RATE_LIMIT': self.MENU_RATE_LIMIT,
            'CORS_ORIGINS': self.CORS_ORIGINS,
            'MAX_CONTENT_LENGTH': self.MAX_CONTENT_LENGTH,
            'REQUEST_TIMEOUT': self.REQUEST_TIMEOUT,
        }


class DevelopmentConfig(Config):
    """Development configuration."""
    ENVIRONMENT = 'development'
    DEBUG = True


class ProductionConfig(Config):
    """Production configuration; pinning and signing are mandatory."""
    ENVIRONMENT = 'production'

    def __init__(self):
        self._validate_production_requirements()
        super().__init__()

    @staticmethod
    def _validate_production_requirements() -> None:
        """Validate that all required settings are configured for production."""
        required_env_vars = [
            'SECRET_KEY',
            'MENU_API_KEY',
            'MENU_SIGNING_KEY',
            'MENU_PINNED_CERTS',
        ]

        missing_vars = [var for var in required_env_vars if not os.environ.get(var, '').strip()]
        if missing_vars:
            error_msg = f"Missing required environment variables for production: {', '.join(missing_vars)}"
            logger.error(error_msg)
            raise ValueError(error_msg)

        if not SecurityConfig.parse_pins(os.environ['MENU_PINNED_CERTS']):
            raise ValueError("MENU_PINNED_CERTS contains no valid pins")

        if not os.environ.get('CORS_ORIGINS'):
            logger.warning("CORS_ORIGINS not explicitly set for production. Using empty list (no CORS).")


class TestingConfig(Config):
    """Testing configuration."""
    ENVIRONMENT = 'testing'
    DEBUG = True
    TESTING = True
    RATELIMIT_ENABLED = False

    def __init__(self):
        super().__init__()
        self.MENU_API_KEY = os.environ.get('TEST_MENU_API_KEY', 'sk-test-0123456789abcdef')


# Configuration mapping
config_map: Dict[str, Any] = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig,
    'default': DevelopmentConfig
}


def get_config(config_name: Optional[str] = None) -> Config:
    """
    Get configuration instance based on environment.

    Args:
        config_name: Configuration name ('development', 'production', 'testing')

    Returns:
        Configuration instance
    """
    if config_name is None:
        config_name = os.environ.get('MENU_ENV', 'default')

    config_class = config_map.get(config_name, DevelopmentConfig)
    return config_class()
