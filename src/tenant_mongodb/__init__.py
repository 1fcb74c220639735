"""
# tenant_mongodb

Multi-tenant data access over MongoDB. Each `Tenant` owns an isolated connection, a registry of
lazily-registered models bound to it and an optional persistent log sink. The bundled
`UserModel` carries password hashing, failed-login lockout and one-time verification and
reset codes.

```python
from tenant_mongodb import Tenant, UserModel

async with Tenant({"tenant_id": "acme", "db_url": "mongodb://localhost:27017/acme"}) as tenant:
    users = tenant.model(UserModel)
    account = await users.authenticate("ada@example.com", "s3cret!")
```
"""

from tenant_mongodb.config import TenantConfig, settings
from tenant_mongodb.database import (
    CappedRetention,
    ConnectionHandle,
    ConnectionManager,
    LogSink,
    LogSinkConfig,
    ModelRegistry,
    RegisteredModel,
)
from tenant_mongodb.errors import (
    AccountLockedError,
    AccountSecurityError,
    CodeExpiredError,
    CodeMismatchError,
    ConfigError,
    ConflictingRetentionError,
    DuplicateModelError,
    DuplicateRecordError,
    InvalidIdError,
    MissingSchemaError,
    StoreConnectionError,
    StoreUnavailableError,
    TenantMongoError,
    ValidationError,
)
from tenant_mongodb.models import IndexSpec, ModelDescriptor
from tenant_mongodb.models.base_model import RecordAccessor
from tenant_mongodb.models.user_models import UserAccount, UserModel
from tenant_mongodb.security.account_security import AccountSecurity
from tenant_mongodb.tenant import Tenant

__version__ = "0.1.0"

__all__ = [
    "AccountLockedError",
    "AccountSecurity",
    "AccountSecurityError",
    "CappedRetention",
    "CodeExpiredError",
    "CodeMismatchError",
    "ConfigError",
    "ConflictingRetentionError",
    "ConnectionHandle",
    "ConnectionManager",
    "DuplicateModelError",
    "DuplicateRecordError",
    "IndexSpec",
    "InvalidIdError",
    "LogSink",
    "LogSinkConfig",
    "MissingSchemaError",
    "ModelDescriptor",
    "ModelRegistry",
    "RecordAccessor",
    "RegisteredModel",
    "StoreConnectionError",
    "StoreUnavailableError",
    "Tenant",
    "TenantConfig",
    "TenantMongoError",
    "UserAccount",
    "UserModel",
    "ValidationError",
    "settings",
]
