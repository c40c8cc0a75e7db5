"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import List, Optional


class LendflowConfig(BaseSettings):
    """Loan lifecycle orchestrator configuration"""

    # Database configuration
    database_url: str = "sqlite:///lendflow.db"  # "memory://" for in-memory storage
    database_timeout_seconds: float = 5.0

    # Application workflow
    required_document_types: List[str] = ["id", "proof_of_residence", "bank_statement", "payslip"]
    default_interest_rate: str = "28.75"  # Annual percentage

    # Contract signature workflow
    contract_expiry_days: int = 7
    contract_decline_roles: List[str] = ["user", "admin"]
    contract_cancel_roles: List[str] = ["admin"]
    contract_base_url: str = "https://sign.lendflow.local"
    contract_document_path: str = "/documents/contracts"

    # SMS configuration
    sms_enabled: bool = True
    sms_provider: str = "log"  # twilio or log
    twilio_account_sid: str = ""
    twilio_auth_token: str = ""
    twilio_from_number: str = ""
    twilio_api_url: str = "https://api.twilio.com/2010-04-01"
    sms_timeout_seconds: float = 5.0  # Isolated from the store timeout
    sms_max_retries: int = 2
    notification_workers: int = 2
    company_name: str = "JB Capital"

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stderr

    # Feature flags
    enable_audit_logging: bool = True

    # Background sweeper
    expiry_sweep_interval_seconds: int = 300

    class Config:
        env_prefix = "LENDFLOW_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = LendflowConfig()


def get_config() -> LendflowConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> LendflowConfig:
    """Reload configuration from environment"""
    global config
    config = LendflowConfig()
    return config
