"""
# Database Package

The `tenant_mongodb.database` package holds the **per-tenant persistence layer**, built on
**Motor** (async MongoDB driver).

## Core Components

- **`manager`**: `ConnectionManager` and `ConnectionHandle`, one live connection per tenant.
- **`registry`**: `ModelRegistry`, the per-tenant cache of connection-bound models.
- **`log_sink`**: `LogSink`, a durable log collection with capped or TTL retention.

No module-level connection exists: every object here hangs off a `Tenant`.
"""

from tenant_mongodb.database.log_sink import CappedRetention, LogEntry, LogSink, LogSinkConfig, MongoLogHandler
from tenant_mongodb.database.manager import ConnectionHandle, ConnectionManager, ConnectionState
from tenant_mongodb.database.registry import ModelRegistry, RegisteredModel

__all__ = [
    "CappedRetention",
    "ConnectionHandle",
    "ConnectionManager",
    "ConnectionState",
    "LogEntry",
    "LogSink",
    "LogSinkConfig",
    "ModelRegistry",
    "MongoLogHandler",
    "RegisteredModel",
]
