"""
# Model Registry

Per-tenant mapping from model name to its compiled, connection-bound `RegisteredModel`.

## Guarantees

- **At most one model per name**: `register()` raises `DuplicateModelError` when the name is
  taken, and the first registration stays retrievable unchanged.
- **Exactly one winner under races**: registration is guarded by a `threading.Lock`, so two
  callers racing on one name (on one event loop or across a thread pool) see one success and
  one `DuplicateModelError`.
- **Indexes before writes**: `RecordAccessor` ensures a model's declared indexes on its
  first write, so unique constraints hold without an explicit `ensure_indexes()` call.
- **No global state**: each `Tenant` owns its registry; two tenants can register the same
  model name against their own databases.

## Usage

```python
registry = ModelRegistry(handle)
notes = registry.register("note", NOTE_DESCRIPTOR)
registry.get("note") is notes  # True
registry.register("note", NOTE_DESCRIPTOR)  # DuplicateModelError
await registry.ensure_indexes()
```
"""

import threading
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from motor.motor_asyncio import AsyncIOMotorCollection
from pymongo.errors import PyMongoError

from tenant_mongodb.database.manager import ConnectionHandle
from tenant_mongodb.errors import DuplicateModelError, MissingSchemaError
from tenant_mongodb.managers.logging_manager import get_logger
from tenant_mongodb.models.descriptor import IndexSpec, ModelDescriptor

logger = get_logger(prefix="[ModelRegistry]")
perf_logger = get_logger(prefix="[DB_PERFORMANCE]")


@dataclass(frozen=True)
class RegisteredModel:
    """
    A descriptor bound to the collection of one tenant connection.

    Attributes:
        name (`str`): Registry key.
        descriptor (`ModelDescriptor`): The registered schema definition.
        collection (`AsyncIOMotorCollection`): Collection of the tenant database.
        tenant_id (`str`): Owning tenant.
    """

    name: str
    descriptor: ModelDescriptor
    collection: AsyncIOMotorCollection
    tenant_id: str
    _index_state: Dict[str, bool] = field(default_factory=dict, compare=False, repr=False)

    @property
    def collection_name(self) -> str:
        return self.descriptor.collection_name

    async def ensure_indexes(self) -> List[str]:
        """
        Create every index declared by the descriptor.

        Index creation is idempotent on the server. Failures are logged and skipped so one bad
        index does not block the others.

        Returns:
            `List[str]`: Names of the indexes that were created or already existed.
        """
        ensured: List[str] = []
        for spec in self.descriptor.indexes:
            if await _create_index_if_not_exists(self.collection, spec):
                ensured.append(spec.index_name)
        if len(ensured) == len(self.descriptor.indexes):
            self._index_state["ready"] = True
        return ensured

    @property
    def indexes_ready(self) -> bool:
        return not self.descriptor.indexes or self._index_state.get("ready", False)

    async def ensure_indexes_once(self) -> None:
        """Create the declared indexes before the first write. Retried until every index exists."""
        if not self.indexes_ready:
            await self.ensure_indexes()


async def _create_index_if_not_exists(collection: AsyncIOMotorCollection, spec: IndexSpec) -> bool:
    """Create an index if it doesn't already exist"""
    start_time = time.time()
    try:
        await collection.create_index(list(spec.keys), **spec.create_kwargs())
    except PyMongoError as e:
        duration = time.time() - start_time
        perf_logger.warning("Failed to create/ensure index '%s' after %.3fs", spec.index_name, duration)
        logger.warning("Could not create/ensure index '%s': %s", spec.index_name, e)
        return False
    perf_logger.debug("Created/ensured index '%s' in %.3fs", spec.index_name, time.time() - start_time)
    return True


class ModelRegistry:
    """
    Compiles model descriptors against one tenant connection and caches the result.

    Args:
        handle (`ConnectionHandle`): The tenant connection the models bind to.
    """

    def __init__(self, handle: ConnectionHandle):
        self.handle = handle
        self.tenant_id = handle.tenant_id
        self._models: Dict[str, RegisteredModel] = {}
        self._lock = threading.Lock()

    def register(self, name: str, descriptor: ModelDescriptor) -> RegisteredModel:
        """
        Register `descriptor` under `name`.

        Raises:
            `DuplicateModelError`: If `name` is already registered for this tenant.
            `MissingSchemaError`: If `descriptor` is not a `ModelDescriptor`.
            `StoreUnavailableError`: If the tenant connection is not open.
        """
        with self._lock:
            if name in self._models:
                raise DuplicateModelError(name, self.tenant_id)
            return self._compile(name, descriptor)

    def get_or_register(self, name: str, descriptor: ModelDescriptor) -> RegisteredModel:
        """
        Return the model registered under `name`, registering `descriptor` first if needed.

        Raises:
            `DuplicateModelError`: If `name` is registered with a different descriptor.
        """
        with self._lock:
            existing = self._models.get(name)
            if existing is None:
                return self._compile(name, descriptor)
            if existing.descriptor != descriptor:
                raise DuplicateModelError(name, self.tenant_id)
            return existing

    def get(self, name: str) -> Optional[RegisteredModel]:
        return self._models.get(name)

    def unregister(self, name: str) -> Optional[RegisteredModel]:
        """Remove and return the model registered under `name`, if any."""
        with self._lock:
            removed = self._models.pop(name, None)
        if removed is not None:
            logger.debug("Unregistered model '%s' for tenant %s", name, self.tenant_id)
        return removed

    def names(self) -> List[str]:
        return list(self._models)

    def clear(self) -> None:
        with self._lock:
            self._models.clear()

    async def ensure_indexes(self) -> Dict[str, List[str]]:
        """
        Create the declared indexes of every registered model.

        Returns:
            `Dict[str, List[str]]`: Ensured index names keyed by model name.
        """
        start_time = time.time()
        result = {name: await model.ensure_indexes() for name, model in list(self._models.items())}
        perf_logger.info(
            "Index creation for tenant %s completed in %.3fs (%d models)",
            self.tenant_id,
            time.time() - start_time,
            len(result),
        )
        return result

    def _compile(self, name: str, descriptor: ModelDescriptor) -> RegisteredModel:
        if not isinstance(descriptor, ModelDescriptor):
            raise MissingSchemaError(f'Cannot register "{name}": a ModelDescriptor is required.')
        collection = self.handle.get_collection(descriptor.collection_name)
        model = RegisteredModel(name=name, descriptor=descriptor, collection=collection, tenant_id=self.tenant_id)
        self._models[name] = model
        logger.info(
            "Registered model '%s' on collection '%s' for tenant %s",
            name,
            descriptor.collection_name,
            self.tenant_id,
        )
        return model

    def __contains__(self, name: object) -> bool:
        return name in self._models

    def __len__(self) -> int:
        return len(self._models)
