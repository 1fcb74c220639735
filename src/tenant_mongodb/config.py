"""
# Configuration

Two layers of configuration drive the package:

1. **Process settings** (`Settings`, exposed as the module-level `settings`): driver timeouts,
   debug/testing switches, log level and the allowed user roles. Loaded by
   `pydantic-settings` from environment variables prefixed with `TENANT_MONGODB_`, optionally
   backed by a dotenv file.
2. **Tenant settings** (`TenantConfig`): one per tenant, supplied by the host process when it
   builds a `Tenant`. Carries the connection URI and the log-collection retention options.

## Config File Discovery

`get_config_path()` resolves the optional dotenv file in this order:

1. **Environment Variable**: `TENANT_MONGODB_CONFIG_PATH` (if set and the file exists).
2. **Dotenv Config**: `.env` in the current working directory.
3. **Fallback**: `None`, meaning environment variables only.

## Usage

```python
from tenant_mongodb.config import TenantConfig, settings

config = TenantConfig.from_mapping({
    "tenant_id": "acme",
    "db_url": "mongodb://localhost:27017/acme",
    "log_collection_name": "logs",
    "log_expiration_days": 30,
})
print(settings.MONGODB_SERVER_SELECTION_TIMEOUT)  # 10000
```
"""

import os
from pathlib import Path
from typing import Any, List, Mapping, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from tenant_mongodb.errors import ConfigError, join_error_messages

# --- Constants ---
DEFAULT_ENV_FILENAME: str = ".env"
CONFIG_ENV_VAR: str = "TENANT_MONGODB_CONFIG_PATH"
ENV_PREFIX: str = "TENANT_MONGODB_"
MONGODB_URI_SCHEMES = ("mongodb://", "mongodb+srv://")


# --- Config file discovery (no logging) ---
def get_config_path() -> Optional[str]:
    """
    Determines the dotenv file to load, if any.

    Returns:
        Optional[str]: The path to the configuration file, or `None` if not found.
    """
    env_path: Optional[str] = os.environ.get(CONFIG_ENV_VAR)
    if env_path and os.path.exists(env_path):
        return env_path
    env_path_file: Path = Path.cwd() / DEFAULT_ENV_FILENAME
    if env_path_file.exists():
        return str(env_path_file)
    return None


CONFIG_PATH: Optional[str] = get_config_path()
if CONFIG_PATH:
    load_dotenv(dotenv_path=CONFIG_PATH, override=False)


class Settings(BaseSettings):
    """
    Process-wide settings shared by every tenant.

    These are read once at import time. Nothing tenant-specific lives here: connection URIs
    and log retention belong to `TenantConfig`.
    """

    model_config = SettingsConfigDict(
        env_prefix=ENV_PREFIX,
        env_file=CONFIG_PATH if CONFIG_PATH else None,
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    DEBUG: bool = False
    # Drops every collection of a tenant database right after it connects.
    TESTING: bool = False
    LOG_LEVEL: str = "INFO"

    # MongoDB driver timeouts (milliseconds)
    MONGODB_SERVER_SELECTION_TIMEOUT: int = 10000
    MONGODB_CONNECTION_TIMEOUT: int = 10000
    DEFAULT_DATABASE_NAME: str = "default_db"

    # The first role is the default for new users.
    USER_ROLES: List[str] = ["user", "admin"]

    @field_validator("MONGODB_SERVER_SELECTION_TIMEOUT", "MONGODB_CONNECTION_TIMEOUT", mode="before")
    @classmethod
    def validate_timeout_values(cls, v: Any, info: Any) -> int:
        """
        Validates that driver timeouts stay within 1 ms and 60 seconds.

        Raises:
            ValueError: If the timeout is out of range.
        """
        timeout = int(v)
        if timeout < 1 or timeout > 60000:
            raise ValueError(f"{info.field_name} must be between 1 and 60000 milliseconds")
        return timeout

    @field_validator("USER_ROLES")
    @classmethod
    def validate_user_roles(cls, v: List[str]) -> List[str]:
        """Ensure at least one role exists, since the first one is the default."""
        roles = [role.strip() for role in v if role and role.strip()]
        if not roles:
            raise ValueError("USER_ROLES must contain at least one role")
        return roles

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Invalid LOG_LEVEL: {v}")
        return level

    @property
    def default_role(self) -> str:
        return self.USER_ROLES[0]


settings = Settings()


class TenantConfig(BaseModel):
    """
    Settings for one tenant.

    Attributes:
        tenant_id (str): Identifier used in logs and error messages.
        db_url (str): MongoDB connection URI (1-255 characters). The database named in the URI
            path is the tenant database.
        log_collection_name (Optional[str]): Collection for the persistent log sink. No sink is
            attached when omitted.
        log_console (bool): Mirror log entries to the console. Defaults to `True`.
        log_expiration_days (Optional[int]): TTL retention in days (1-365).
        log_capped (bool): Use a capped log collection instead of TTL retention.
        log_max_size (Optional[int]): Capped collection size in MB.
        log_max_docs (Optional[int]): Capped collection document limit.
        log_shared_connection (bool): Let the log sink reuse the tenant connection instead of
            opening its own. Defaults to `True`.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    tenant_id: str = Field("default", min_length=1, max_length=64)
    db_url: str = Field(..., min_length=1, max_length=255)
    log_collection_name: Optional[str] = Field(None, min_length=1, max_length=255)
    log_console: bool = True
    log_expiration_days: Optional[int] = Field(None, ge=1, le=365)
    log_capped: bool = False
    log_max_size: Optional[int] = Field(None, gt=0)
    log_max_docs: Optional[int] = Field(None, gt=0)
    log_shared_connection: bool = True

    @field_validator("db_url")
    @classmethod
    def validate_db_url(cls, v: str) -> str:
        """Reject URIs that are blank or not MongoDB connection strings."""
        v = v.strip()
        if not v:
            raise ValueError("db_url cannot be empty")
        if not v.startswith(MONGODB_URI_SCHEMES):
            raise ValueError("db_url must start with mongodb:// or mongodb+srv://")
        return v

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "TenantConfig":
        """
        Build a config from raw settings, reporting every problem at once.

        Raises:
            ConfigError: If any setting is missing or malformed. The message joins all field
                errors with `", "`.
        """
        try:
            return cls.model_validate(dict(data))
        except PydanticValidationError as exc:
            raise ConfigError(join_error_messages(exc.errors())) from exc
