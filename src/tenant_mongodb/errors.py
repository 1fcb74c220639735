"""
# Error Taxonomy

All exceptions raised by `tenant_mongodb` derive from `TenantMongoError`, so a host
process can catch the whole family in one clause while still telling the categories apart.

## Categories

| Category | Exceptions | Handling |
|----------|------------|----------|
| Configuration | `ConfigError`, `ConflictingRetentionError` | Fatal to the operation, never retried |
| Infrastructure | `StoreConnectionError`, `StoreUnavailableError` | Surfaced; the caller owns retry policy |
| Programmer errors | `DuplicateModelError`, `MissingSchemaError` | Fail fast at construction |
| Bad input | `ValidationError`, `DuplicateRecordError`, `InvalidIdError` | Caller corrects input |
| Security outcomes | `AccountLockedError`, `CodeExpiredError`, `CodeMismatchError` | Typed results, always reported |

Teardown paths (`disconnect()` on connections and log sinks) never raise; they log instead.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional


class TenantMongoError(Exception):
    """Base class for every error raised by this package."""


class ConfigError(TenantMongoError):
    """Missing or malformed settings."""


class ConflictingRetentionError(ConfigError):
    """Capped and TTL retention were both requested for one log collection."""


class StoreConnectionError(TenantMongoError, ConnectionError):
    """The backing store could not be reached within the connection timeout."""


class StoreUnavailableError(TenantMongoError):
    """The connection dropped (or was never opened) while an operation was in flight."""


class DuplicateModelError(TenantMongoError):
    """A model name is already registered for this tenant."""

    def __init__(self, name: str, tenant_id: Optional[str] = None):
        self.name = name
        self.tenant_id = tenant_id
        suffix = f" for tenant '{tenant_id}'" if tenant_id else ""
        super().__init__(f'Model "{name}" already registered{suffix}.')


class MissingSchemaError(TenantMongoError, TypeError):
    """A concrete record type did not supply a model descriptor."""


class ValidationError(TenantMongoError, ValueError):
    """
    Record data violated the descriptor's field constraints.

    Attributes:
        errors (`List[Dict[str, Any]]`): One entry per violation, each with at least
            `loc` and `msg` keys (the shape pydantic reports).
    """

    def __init__(self, message: str, errors: Optional[List[Dict[str, Any]]] = None):
        self.errors = errors or []
        super().__init__(message)


class DuplicateRecordError(ValidationError):
    """A write violated a unique index."""


class InvalidIdError(TenantMongoError, ValueError):
    """A record identifier is not a valid ObjectId."""


class AccountSecurityError(TenantMongoError):
    """Base class for expected account-security outcomes."""


class AccountLockedError(AccountSecurityError):
    """Authentication refused because the account is temporarily locked."""

    def __init__(self, lock_until: datetime):
        self.lock_until = lock_until
        super().__init__(f"Account is locked until {lock_until.isoformat()}")


class CodeExpiredError(AccountSecurityError):
    """A one-time code was presented after its expiry."""

    def __init__(self, kind: str):
        self.kind = kind
        super().__init__(f"The {kind} code has expired")


class CodeMismatchError(AccountSecurityError):
    """A one-time code did not match the pending one (or none was pending)."""

    def __init__(self, kind: str):
        self.kind = kind
        super().__init__(f"The {kind} code does not match")


def join_error_messages(errors: List[Dict[str, Any]]) -> str:
    """Flatten pydantic-style error dicts into one `"field: message, ..."` string."""
    messages = []
    for error in errors:
        location = ".".join(str(part) for part in error.get("loc", ()) if part != "__root__")
        message = error.get("msg", "invalid value")
        messages.append(f"{location}: {message}" if location else message)
    return ", ".join(messages)
