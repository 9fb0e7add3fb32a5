"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class FilingConfig(BaseSettings):
    """Filing workflow engine configuration"""
    
    # Database configuration
    database_url: str = "sqlite:///filing_workflow.db"  # or memory://
    
    # Companies House registry configuration
    registry_base_url: str = "https://api.company-information.service.gov.uk"
    registry_api_key: str = ""  # FILING_REGISTRY_API_KEY env var
    registry_timeout: float = 10.0  # seconds; the registry fetch is the only blocking call
    registry_enabled: bool = True
    
    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8095
    api_workers: int = 1
    
    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout
    
    # Statutory deadline rules
    accounts_due_months: int = 9
    corporation_tax_due_months: int = 12
    
    # Feature flags
    enable_audit_logging: bool = True
    use_mock_registry: bool = False
    
    class Config:
        env_prefix = "FILING_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = FilingConfig()


def get_config() -> FilingConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> FilingConfig:
    """Reload configuration from environment"""
    global config
    config = FilingConfig()
    return config
