"""
# Connection Management Module

This module owns the **per-tenant MongoDB connection lifecycle**. Each tenant gets exactly one
`ConnectionManager`, which hands out exactly one live `ConnectionHandle` wrapping a Motor
`AsyncIOMotorClient` and the tenant's default database.

## Architecture Overview

```
┌─────────────────────────────────────────────────────────────┐
│                   Per-Tenant Connections                     │
├─────────────────────────────────────────────────────────────┤
│                                                              │
│   ┌──────────────┐      ┌───────────────────────────────┐    │
│   │   Tenant A   │─────▶│  ConnectionManager("a")       │    │
│   └──────────────┘      │    └─ ConnectionHandle ──────────────▶ mongodb://.../a
│                         └───────────────────────────────┘    │
│   ┌──────────────┐      ┌───────────────────────────────┐    │
│   │   Tenant B   │─────▶│  ConnectionManager("b")       │    │
│   └──────────────┘      │    └─ ConnectionHandle ──────────────▶ mongodb://.../b
│                         └───────────────────────────────┘    │
└─────────────────────────────────────────────────────────────┘
```

There is no module-level singleton: the handle lives on the manager, and the manager lives on
the `Tenant` that created it.

## Handle States

`DISCONNECTED → CONNECTING → CONNECTED → DISCONNECTED`

The final `DISCONNECTED` is terminal: after `disconnect()` (or a failed `connect()`) the handle
is never reused; a new `connect()` builds a new handle.

## Failure Modes

- **Malformed URI** (`InvalidURI`, `ConfigurationError` from PyMongo): raised as `ConfigError`.
- **Unreachable server**: the initial `ping` gives up after `MONGODB_SERVER_SELECTION_TIMEOUT`
  (10s by default) and raises `StoreConnectionError`. No retry is attempted.
- **Asynchronous disconnects** while connected: observed through a PyMongo `ServerListener`,
  logged, and forwarded to callbacks registered with `add_disconnect_listener()`.
- **Teardown**: `disconnect()` never raises. Missing or closed handles log a warning.

## Usage

```python
manager = ConnectionManager(tenant_id="acme")
handle = await manager.connect(config)
users = handle.get_collection("users")
await manager.disconnect()
await manager.disconnect()  # logs a warning, does nothing
```
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorCollection, AsyncIOMotorDatabase
from pymongo import monitoring
from pymongo.errors import ConfigurationError, ConnectionFailure, InvalidURI, OperationFailure, PyMongoError

from tenant_mongodb.config import TenantConfig, settings
from tenant_mongodb.errors import ConfigError, StoreConnectionError, StoreUnavailableError
from tenant_mongodb.managers.logging_manager import get_logger

db_logger = get_logger(prefix="[DATABASE]")
perf_logger = get_logger(prefix="[DB_PERFORMANCE]")
health_logger = get_logger(prefix="[DB_HEALTH]")

# Error code MongoDB returns when dropping a namespace that does not exist
NAMESPACE_NOT_FOUND = 26

DisconnectCallback = Callable[[str], None]


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class DisconnectObserver(monitoring.ServerListener):
    """
    Surfaces server disconnects for one handle.

    PyMongo calls this from its monitor threads whenever a server description changes. A
    transition from a known server type to `Unknown` means the server stopped answering.
    """

    def __init__(self, tenant_id: str):
        self.tenant_id = tenant_id
        self._callbacks: List[DisconnectCallback] = []

    def add_callback(self, callback: DisconnectCallback) -> None:
        self._callbacks.append(callback)

    def opened(self, event: monitoring.ServerOpeningEvent) -> None:
        db_logger.debug("Server %s opened for tenant %s", event.server_address, self.tenant_id)

    def description_changed(self, event: monitoring.ServerDescriptionChangedEvent) -> None:
        previous = event.previous_description
        current = event.new_description
        if previous.is_server_type_known and not current.is_server_type_known:
            address = "%s:%s" % event.server_address
            db_logger.warning("Database disconnected from %s (tenant: %s)", address, self.tenant_id)
            for callback in list(self._callbacks):
                try:
                    callback(address)
                except Exception as e:
                    db_logger.error("Disconnect listener failed for tenant %s: %s", self.tenant_id, e)

    def closed(self, event: monitoring.ServerClosedEvent) -> None:
        db_logger.debug("Server %s closed for tenant %s", event.server_address, self.tenant_id)


@dataclass
class ConnectionHandle:
    """
    One live connection to a tenant's backing store.

    Attributes:
        tenant_id (`str`): Owning tenant.
        client (`Optional[AsyncIOMotorClient]`): Motor client. `None` once closed.
        database (`Optional[AsyncIOMotorDatabase]`): The tenant database (default database of
            the URI).
        state (`ConnectionState`): Current lifecycle state.
    """

    tenant_id: str
    client: Optional[AsyncIOMotorClient] = None
    database: Optional[AsyncIOMotorDatabase] = None
    state: ConnectionState = ConnectionState.DISCONNECTED
    observer: Optional[DisconnectObserver] = field(default=None, repr=False)

    @property
    def name(self) -> str:
        return self.database.name if self.database is not None else "<closed>"

    @property
    def is_connected(self) -> bool:
        return self.state == ConnectionState.CONNECTED and self.client is not None

    def get_collection(self, collection_name: str) -> AsyncIOMotorCollection:
        """
        Retrieve a collection of the tenant database.

        Raises:
            `StoreUnavailableError`: If the handle is not connected.
        """
        if not self.is_connected or self.database is None:
            db_logger.error("Attempted to get collection '%s' without database connection", collection_name)
            raise StoreUnavailableError(f"Tenant '{self.tenant_id}' is not connected. Call connect() first.")
        return self.database[collection_name]

    def add_disconnect_listener(self, callback: DisconnectCallback) -> None:
        """Register `callback(address)` to be called when the server stops answering."""
        if self.observer is not None:
            self.observer.add_callback(callback)


class ConnectionManager:
    """
    Opens and closes the single connection of one tenant.

    **Lifecycle:**
    1. **Instantiation**: no I/O, `handle` is `None`
    2. **Connection**: `connect(config)` validates the URI, pings the server and returns the handle
    3. **Shutdown**: `disconnect()` closes the client; safe to call any number of times

    Example:
        ```python
        manager = ConnectionManager("acme")
        handle = await manager.connect(config)
        if await manager.health_check():
            print(f"Connected to {handle.name}")
        await manager.disconnect()
        ```
    """

    def __init__(self, tenant_id: str):
        self.tenant_id = tenant_id
        self.handle: Optional[ConnectionHandle] = None

    async def connect(self, config: TenantConfig) -> ConnectionHandle:
        """
        Establish the tenant connection.

        Calling `connect()` while already connected returns the live handle, so a tenant never
        owns two clients.

        Args:
            config (`TenantConfig`): Tenant settings providing `db_url`.

        Returns:
            `ConnectionHandle`: The connected handle.

        Raises:
            `ConfigError`: If the URI is missing or malformed.
            `StoreConnectionError`: If the server is unreachable within the timeout.
        """
        if self.handle is not None and self.handle.is_connected:
            db_logger.debug("Tenant %s already connected to %s", self.tenant_id, self.handle.name)
            return self.handle

        if not config.db_url:
            raise ConfigError("Missing 'db_url' in tenant database config.")

        start_time = time.time()
        observer = DisconnectObserver(self.tenant_id)
        handle = ConnectionHandle(tenant_id=self.tenant_id, state=ConnectionState.CONNECTING, observer=observer)
        self.handle = handle
        db_logger.info("Starting MongoDB connection process for tenant %s", self.tenant_id)

        try:
            client = AsyncIOMotorClient(
                config.db_url,
                serverSelectionTimeoutMS=settings.MONGODB_SERVER_SELECTION_TIMEOUT,
                connectTimeoutMS=settings.MONGODB_CONNECTION_TIMEOUT,
                tz_aware=True,
                event_listeners=[observer],
            )
            database = client.get_default_database(default=settings.DEFAULT_DATABASE_NAME)
        except (InvalidURI, ConfigurationError) as e:
            handle.state = ConnectionState.DISCONNECTED
            db_logger.error("Invalid connection string for tenant %s: %s", self.tenant_id, e)
            raise ConfigError(f"Invalid database URI: {e}") from e

        handle.client = client
        handle.database = database

        try:
            ping_start = time.time()
            await client.admin.command("ping")
            ping_duration = time.time() - ping_start
        except (ConnectionFailure, OperationFailure) as e:
            duration = time.time() - start_time
            perf_logger.warning("Connection attempt failed after %.3fs", duration)
            db_logger.error("Database connection error for tenant %s: %s", self.tenant_id, e)
            client.close()
            handle.client = None
            handle.state = ConnectionState.DISCONNECTED
            raise StoreConnectionError(f"Failed to connect to database: {e}") from e

        handle.state = ConnectionState.CONNECTED
        total_duration = time.time() - start_time
        perf_logger.info(
            "MongoDB connection established successfully in %.3fs (ping: %.3fs)", total_duration, ping_duration
        )
        db_logger.info("Database connected to '%s' for tenant %s", database.name, self.tenant_id)

        if settings.TESTING:
            await drop_all_collections(database)

        return handle

    async def disconnect(self, handle: Optional[ConnectionHandle] = None) -> None:
        """
        Close the tenant connection.

        Never raises: shutdown sequences must be able to call this unconditionally. A missing or
        already-closed handle only logs a warning, and a failure while closing is logged as an
        error.

        Args:
            handle (`Optional[ConnectionHandle]`): Handle to close. Defaults to the manager's own.
        """
        handle = handle if handle is not None else self.handle
        if handle is None or handle.client is None or handle.state == ConnectionState.DISCONNECTED:
            db_logger.warning("disconnect: invalid or missing connection for tenant %s", self.tenant_id)
            return

        start_time = time.time()
        name = handle.name
        try:
            handle.client.close()
            perf_logger.info("MongoDB disconnection completed in %.3fs", time.time() - start_time)
            db_logger.info('Database connection "%s" closed.', name)
        except Exception as e:
            db_logger.error('Error closing database connection "%s": %s', name, e)
        finally:
            handle.client = None
            handle.state = ConnectionState.DISCONNECTED

    async def health_check(self) -> bool:
        """
        Ping the tenant database without raising.

        Returns:
            `bool`: `True` if the server answered, `False` otherwise.
        """
        if self.handle is None or not self.handle.is_connected:
            health_logger.warning("Health check failed: no database client for tenant %s", self.tenant_id)
            return False
        start_time = time.time()
        try:
            await self.handle.client.admin.command("ping")
        except PyMongoError as e:
            health_logger.error("Database health check failed for tenant %s: %s", self.tenant_id, e)
            return False
        perf_logger.debug("Database health check completed in %.3fs", time.time() - start_time)
        return True


async def drop_all_collections(database: AsyncIOMotorDatabase) -> None:
    """
    Drop every collection of `database`. Used when `settings.TESTING` is enabled so each test
    run starts from a clean tenant database.
    """
    for collection_name in await database.list_collection_names():
        try:
            await database.drop_collection(collection_name)
            db_logger.info("Dropped collection: %s", collection_name)
        except OperationFailure as e:
            if e.code == NAMESPACE_NOT_FOUND or "a background operation is currently running" in str(e):
                continue
            db_logger.warning("Failed to drop collection %s: %s", collection_name, e)
