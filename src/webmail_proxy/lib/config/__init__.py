"""Configuration management for the webmail proxy."""

from dotenv import load_dotenv

from webmail_proxy.lib.config.app_config import AppConfig
from webmail_proxy.lib.config.auth_config import AuthConfig
from webmail_proxy.lib.config.mail_config import MailConfig
from webmail_proxy.lib.config.storage_config import StorageConfig

# Load environment variables from .env file
load_dotenv()

# Load and validate all configs
app_config = AppConfig.from_env()
auth_config = AuthConfig.from_env()
mail_config = MailConfig.from_env()
storage_config = StorageConfig.from_env()

# Validate
app_config.validate()
auth_config.validate()
mail_config.validate()
storage_config.validate()

__all__ = [
    "app_config",
    "auth_config",
    "mail_config",
    "storage_config",
    "AppConfig",
    "AuthConfig",
    "MailConfig",
    "StorageConfig",
]
