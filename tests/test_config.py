"""
Tests for configuration loading.
"""

import pytest

from menuscan import config as settings
from menuscan.config import DevelopmentConfig, ProductionConfig, SecurityConfig, get_config, mask_key
from menuscan.models.data_models import AnalysisConfiguration


PIN = "sha256/AAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAA="

ENV_VARS = [
    'SECRET_KEY', 'CORS_ORIGINS', 'MENU_API_KEY', 'MENU_AI_MODEL', 'MENU_API_HOST',
    'MENU_API_PATH_PREFIX', 'MENU_API_VERSION', 'MENU_SIGNING_KEY', 'MENU_PINNED_CERTS',
    'MENU_RATE_LIMIT', 'MENU_ANALYSIS_MODE', 'MENU_ENV', 'TEST_MENU_API_KEY',
]


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


class TestSecurityConfig:
    """Test cases for SecurityConfig helpers."""

    @pytest.mark.parametrize("key,valid", [
        ("sk-live-0123456789abcdef", True),
        ("", False),
        (None, False),
        ("short", False),
        ("your-api-key-here-please", False),
    ])
    def test_validate_api_key(self, key, valid):
        """Test API key validation rules."""
        assert SecurityConfig.validate_api_key('MENU_API_KEY', key) is valid

    def test_parse_pins(self):
        """Test malformed pins are dropped."""
        pins = SecurityConfig.parse_pins(f"{PIN}, md5/abc, sha256/, ,{PIN}")
        assert pins == [PIN, PIN]

    def test_cors_origins(self, monkeypatch):
        """Test CORS origins per environment."""
        assert SecurityConfig.get_cors_origins('production') == []
        assert 'http://localhost:3000' in SecurityConfig.get_cors_origins('development')

        monkeypatch.setenv('CORS_ORIGINS', 'https://a.example, https://b.example,')
        assert SecurityConfig.get_cors_origins('production') == ['https://a.example', 'https://b.example']

    def test_mask_key(self):
        """Test secrets are masked."""
        assert mask_key(None) == "Not configured"
        assert mask_key("abcd") == "****"
        assert mask_key("abcdefghijkl") == "abcd****ijkl"


class TestConfig:
    """Test cases for the configuration classes."""

    def test_development_defaults(self):
        """Test defaults with an empty environment."""
        config = DevelopmentConfig()

        assert config.DEBUG is True
        assert config.MENU_API_HOST == 'api.anthropic.com'
        assert config.MENU_API_PATH_PREFIX == '/v1/'
        assert config.MENU_RATE_LIMIT == 20
        assert config.MENU_PINNED_CERTS == []
        assert config.MENU_SIGNING_KEY  # development key generated
        assert config.ai_configured is False
        assert config.analysis_configuration() == AnalysisConfiguration.balanced()

    def test_environment_overrides(self, monkeypatch):
        """Test settings are read from the environment."""
        monkeypatch.setenv('MENU_API_KEY', 'sk-live-0123456789abcdef')
        monkeypatch.setenv('MENU_API_HOST', 'API.Example.com ')
        monkeypatch.setenv('MENU_RATE_LIMIT', '5')
        monkeypatch.setenv('MENU_ANALYSIS_MODE', 'fast')
        monkeypatch.setenv('MENU_PINNED_CERTS', PIN)
        config = DevelopmentConfig()

        assert config.ai_configured is True
        assert config.MENU_API_HOST == 'api.example.com'
        assert config.MENU_RATE_LIMIT == 5
        assert config.MENU_PINNED_CERTS == [PIN]
        assert config.analysis_configuration() == AnalysisConfiguration.fast()

    @pytest.mark.parametrize("name,value", [
        ('MENU_RATE_LIMIT', 'many'),
        ('MENU_RATE_LIMIT', '0'),
        ('MENU_ANALYSIS_MODE', 'turbo'),
        ('MENU_API_PATH_PREFIX', 'v1/'),
    ])
    def test_invalid_settings(self, monkeypatch, name, value):
        """Test invalid values are rejected at startup."""
        monkeypatch.setenv(name, value)
        with pytest.raises(ValueError):
            DevelopmentConfig()

    def test_production_requires_security_settings(self, monkeypatch):
        """Test production refuses to start without keys and pins."""
        monkeypatch.setenv('SECRET_KEY', 'production-secret')
        monkeypatch.setenv('MENU_API_KEY', 'sk-live-0123456789abcdef')
        monkeypatch.setenv('MENU_SIGNING_KEY', 'signing-secret')

        with pytest.raises(ValueError, match='MENU_PINNED_CERTS'):
            ProductionConfig()

        monkeypatch.setenv('MENU_PINNED_CERTS', 'md5/not-a-pin')
        with pytest.raises(ValueError):
            ProductionConfig()

        monkeypatch.setenv('MENU_PINNED_CERTS', PIN)
        config = ProductionConfig()
        assert config.SESSION_COOKIE_SECURE is True
        assert config.MENU_SIGNING_KEY == 'signing-secret'

    def test_testing_config(self):
        """Test the testing configuration."""
        config = settings.TestingConfig()

        assert config.TESTING is True
        assert config.RATELIMIT_ENABLED is False
        assert config.ai_configured is True

    def test_mask_sensitive_config(self, monkeypatch):
        """Test secrets never appear in the masked view."""
        monkeypatch.setenv('MENU_API_KEY', 'sk-live-0123456789abcdef')
        config = DevelopmentConfig()
        masked = config.mask_sensitive_config()

        assert masked['MENU_API_KEY'] == 'sk-l' + '*' * 16 + 'cdef'
        assert 'sk-live-0123456789abcdef' not in str(masked)
        assert config.MENU_SIGNING_KEY not in str(masked)

    def test_get_config(self, monkeypatch):
        """Test configuration lookup by name and environment."""
        assert isinstance(get_config('testing'), settings.TestingConfig)
        assert isinstance(get_config('unknown'), DevelopmentConfig)

        monkeypatch.setenv('MENU_ENV', 'testing')
        assert isinstance(get_config(), settings.TestingConfig)
