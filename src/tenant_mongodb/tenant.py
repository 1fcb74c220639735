"""
# Tenant

A `Tenant` owns every per-tenant resource: its connection (through a `ConnectionManager`), its
`ModelRegistry` and its optional `LogSink`. It is passed explicitly to the code that needs it;
the package keeps no process-wide connection or registry.

```python
async with Tenant({"tenant_id": "acme", "db_url": "mongodb://localhost/acme"}) as tenant:
    users = tenant.model(UserModel)
    await tenant.ensure_indexes()
    await users.create({...})
```

Bootstrap order: log settings are checked first (a retention conflict fails before any
connection opens), then the connection, the registry and finally the sink. Shutdown releases
them in reverse.
"""

from typing import Any, Dict, List, Mapping, Optional, Type, TypeVar, Union

from tenant_mongodb.config import TenantConfig
from tenant_mongodb.database.log_sink import ErrorCallback, LogSink, LogSinkConfig
from tenant_mongodb.database.manager import ConnectionHandle, ConnectionManager
from tenant_mongodb.database.registry import ModelRegistry
from tenant_mongodb.errors import StoreUnavailableError
from tenant_mongodb.managers.logging_manager import get_logger
from tenant_mongodb.models.base_model import RecordAccessor

logger = get_logger(prefix="[Tenant]")

A = TypeVar("A", bound=RecordAccessor)


class Tenant:
    """
    Lifecycle owner of one tenant's resources.

    Args:
        config (`Union[TenantConfig, Mapping[str, Any]]`): Tenant settings. Raw mappings are
            validated with `TenantConfig.from_mapping()`.
        on_log_error (`Optional[Callable[[Exception, LogEntry], None]]`): Error channel of the
            log sink.

    Raises:
        `ConfigError`: If `config` is invalid.
    """

    def __init__(self, config: Union[TenantConfig, Mapping[str, Any]], on_log_error: Optional[ErrorCallback] = None):
        self.config = config if isinstance(config, TenantConfig) else TenantConfig.from_mapping(config)
        self.tenant_id = self.config.tenant_id
        self.on_log_error = on_log_error
        self.connection_manager = ConnectionManager(self.tenant_id)
        self.registry: Optional[ModelRegistry] = None
        self.log: Optional[LogSink] = None
        self._accessors: Dict[type, RecordAccessor] = {}

    @property
    def handle(self) -> Optional[ConnectionHandle]:
        return self.connection_manager.handle

    @property
    def is_bootstrapped(self) -> bool:
        return self.registry is not None and self.handle is not None and self.handle.is_connected

    async def bootstrap(self) -> "Tenant":
        """
        Connect, build the registry and attach the log sink (if `log_collection_name` is set).

        Calling it again on a bootstrapped tenant is a no-op.

        Raises:
            `ConfigError`, `ConflictingRetentionError`: On invalid settings, before any I/O.
            `StoreConnectionError`: If the database cannot be reached.
        """
        if self.is_bootstrapped:
            return self

        sink_config = LogSinkConfig.from_tenant_config(self.config) if self.config.log_collection_name else None

        handle = await self.connection_manager.connect(self.config)
        self.registry = ModelRegistry(handle)

        if sink_config is not None:
            try:
                self.log = await LogSink.connect(
                    sink_config,
                    db_url=self.config.db_url,
                    shared=handle if self.config.log_shared_connection else None,
                    on_error=self.on_log_error,
                )
            except Exception:
                logger.error("Log sink setup failed for tenant %s; closing connection", self.tenant_id)
                self.registry = None
                await self.connection_manager.disconnect()
                raise

        logger.info("Tenant %s bootstrapped", self.tenant_id)
        return self

    def model(self, accessor_cls: Type[A]) -> A:
        """
        Return the accessor of type `accessor_cls`, constructing (and registering) it once.

        Raises:
            `StoreUnavailableError`: If the tenant is not bootstrapped.
            `MissingSchemaError`: If `accessor_cls` supplies no descriptor.
        """
        if self.registry is None:
            raise StoreUnavailableError(f"Tenant '{self.tenant_id}' is not bootstrapped. Call bootstrap() first.")
        accessor = self._accessors.get(accessor_cls)
        if accessor is None:
            accessor = accessor_cls(self.registry)
            self._accessors[accessor_cls] = accessor
        return accessor

    async def ensure_indexes(self) -> Dict[str, List[str]]:
        if self.registry is None:
            raise StoreUnavailableError(f"Tenant '{self.tenant_id}' is not bootstrapped. Call bootstrap() first.")
        return await self.registry.ensure_indexes()

    async def health_check(self) -> bool:
        return await self.connection_manager.health_check()

    async def shutdown(self) -> None:
        """Close the log sink, then the connection. Never raises."""
        if self.log is not None:
            await self.log.disconnect()
            self.log = None
        await self.connection_manager.disconnect()
        if self.registry is not None:
            self.registry.clear()
            self.registry = None
        self._accessors.clear()
        logger.info("Tenant %s shut down", self.tenant_id)

    async def __aenter__(self) -> "Tenant":
        return await self.bootstrap()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.shutdown()
