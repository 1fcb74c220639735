"""
# Record Accessor Base

`RecordAccessor` is the uniform CRUD surface every tenant-scoped model exposes. A concrete type
only has to supply its `ModelDescriptor`:

```python
class NoteModel(RecordAccessor):
    @classmethod
    def descriptor(cls) -> ModelDescriptor:
        return NOTE_DESCRIPTOR

notes = NoteModel(tenant.registry)
note = await notes.create({"title": "Hello"})
same = await notes.find_by_id(note["_id"])
await notes.update_by_id(note["_id"], {"title": "Hi"})
await notes.delete_by_id(note["_id"])
```

## Behaviour

- **Lazy registration**: constructing an accessor registers its descriptor with the tenant's
  `ModelRegistry` on first use and reuses the compiled model afterwards.
- **Fail-fast schema check**: a subclass whose `descriptor()` returns nothing raises
  `MissingSchemaError` at construction.
- **One awaitable per operation**: each method issues a single driver call and returns plain
  documents (`dict`). No query builders leak out.
- **Indexes before writes**: the first `create()` or `update_by_id()` ensures the declared
  indexes, so unique constraints are enforced from the first document on.
- **No retries**: a dropped or closed connection surfaces as `StoreUnavailableError`.
"""

import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Dict, List, Mapping, Optional, Union

from bson import ObjectId
from pymongo import ReturnDocument
from pymongo.errors import ConnectionFailure, DuplicateKeyError, InvalidOperation

from tenant_mongodb.database.registry import ModelRegistry, RegisteredModel
from tenant_mongodb.errors import DuplicateRecordError, InvalidIdError, MissingSchemaError, StoreUnavailableError
from tenant_mongodb.managers.logging_manager import get_logger
from tenant_mongodb.models.descriptor import ModelDescriptor

db_logger = get_logger(prefix="[DATABASE]")
perf_logger = get_logger(prefix="[DB_PERFORMANCE]")

RecordId = Union[str, ObjectId]

SENSITIVE_FIELDS = {
    "password",
    "passwordhash",
    "password_hash",
    "verifycode",
    "verify_code",
    "resetcode",
    "reset_code",
    "token",
    "secret",
}


def truncate_to_millis(value: datetime) -> datetime:
    """Drop sub-millisecond precision, which BSON dates cannot store."""
    return value.replace(microsecond=value.microsecond // 1000 * 1000)


def utcnow() -> datetime:
    return truncate_to_millis(datetime.now(timezone.utc))


def to_object_id(record_id: Any) -> ObjectId:
    """
    Coerce a record identifier to an `ObjectId`.

    Raises:
        `InvalidIdError`: If `record_id` is neither an `ObjectId` nor its 24-character hex form.
    """
    if isinstance(record_id, ObjectId):
        return record_id
    if isinstance(record_id, str) and ObjectId.is_valid(record_id):
        return ObjectId(record_id)
    raise InvalidIdError(f"Invalid record id: {record_id!r}")


def sanitize_for_logging(query: Any) -> Any:
    """Redact password and code fields from a query or document before it is logged."""
    if isinstance(query, dict):
        return {
            key: "[REDACTED]" if str(key).lower() in SENSITIVE_FIELDS else sanitize_for_logging(value)
            for key, value in query.items()
        }
    if isinstance(query, list):
        return [sanitize_for_logging(item) for item in query]
    return query


class RecordAccessor:
    """
    Base class for tenant-scoped models.

    Subclasses must override `descriptor()`; they may override `prepare_create()` and
    `prepare_update()` to transform data right before it is persisted.

    Args:
        registry (`ModelRegistry`): Registry of the tenant the accessor works for.

    Raises:
        `MissingSchemaError`: If the subclass supplies no descriptor.
    """

    def __init__(self, registry: ModelRegistry):
        descriptor = self.descriptor()
        if not isinstance(descriptor, ModelDescriptor):
            raise MissingSchemaError(
                f'Missing or invalid schema in "{type(self).__name__}". '
                "Subclasses must override the descriptor() method."
            )
        self._model: RegisteredModel = registry.get_or_register(descriptor.name, descriptor)

    @classmethod
    def descriptor(cls) -> Optional[ModelDescriptor]:
        """Return the model descriptor. Concrete record types must override this."""
        return None

    @property
    def name(self) -> str:
        return self._model.name

    @property
    def registered_model(self) -> RegisteredModel:
        return self._model

    @property
    def collection(self):
        """The underlying `AsyncIOMotorCollection`."""
        return self._model.collection

    # --- Hooks ---------------------------------------------------------------

    async def prepare_create(self, data: Dict[str, Any]) -> Dict[str, Any]:
        """Transform raw `create()` input before validation."""
        return data

    async def prepare_update(self, fields: Dict[str, Any]) -> Dict[str, Any]:
        """Transform the `$set` fields of an update before validation."""
        return fields

    # --- CRUD ----------------------------------------------------------------

    async def find(
        self, filter: Optional[Dict[str, Any]] = None, projection: Optional[Dict[str, Any]] = None
    ) -> List[Dict[str, Any]]:
        """
        Find all documents matching `filter`.

        Args:
            filter (`Optional[Dict[str, Any]]`): MongoDB query. Defaults to all documents.
            projection (`Optional[Dict[str, Any]]`): Fields to include or exclude.
        """
        filter = filter or {}

        async def _run() -> List[Dict[str, Any]]:
            return await self.collection.find(filter, projection).to_list(length=None)

        return await self._execute("find", _run(), filter)

    async def find_one(self, filter: Optional[Dict[str, Any]] = None) -> Optional[Dict[str, Any]]:
        filter = filter or {}
        return await self._execute("find_one", self.collection.find_one(filter), filter)

    async def find_by_id(self, record_id: RecordId) -> Optional[Dict[str, Any]]:
        """
        Raises:
            `InvalidIdError`: If `record_id` is malformed.
        """
        filter = {"_id": to_object_id(record_id)}
        return await self._execute("find_by_id", self.collection.find_one(filter), filter)

    async def count(self, filter: Optional[Dict[str, Any]] = None) -> int:
        filter = filter or {}
        return await self._execute("count", self.collection.count_documents(filter), filter)

    async def create(self, data: Mapping[str, Any]) -> Dict[str, Any]:
        """
        Validate and insert a new document.

        Returns:
            `Dict[str, Any]`: The stored document, including `_id` and timestamps.

        Raises:
            `ValidationError`: If `data` violates the schema.
            `DuplicateRecordError`: If a unique index rejects the document.
        """
        prepared = await self.prepare_create(dict(data))
        document = self._model.descriptor.validate(prepared)
        await self._model.ensure_indexes_once()
        if self._model.descriptor.timestamps:
            now = utcnow()
            document.setdefault("createdAt", now)
            document["updatedAt"] = now

        result = await self._execute("insert_one", self.collection.insert_one(document), document)
        document["_id"] = result.inserted_id
        return document

    async def update_by_id(self, record_id: RecordId, patch: Mapping[str, Any]) -> Optional[Dict[str, Any]]:
        """
        Update a document and return its post-update state.

        `patch` is either a plain field mapping (validated field by field and applied with
        `$set`) or a MongoDB update document whose `$set` part is validated.

        Returns:
            `Optional[Dict[str, Any]]`: The updated document, or `None` if no document has that id.

        Raises:
            `InvalidIdError`: If `record_id` is malformed.
            `ValidationError`: If a `$set` field violates the schema.
        """
        filter = {"_id": to_object_id(record_id)}
        update = await self._build_update(patch)
        await self._model.ensure_indexes_once()
        return await self._execute(
            "update_by_id",
            self.collection.find_one_and_update(filter, update, return_document=ReturnDocument.AFTER),
            filter,
        )

    async def delete_by_id(self, record_id: RecordId) -> Optional[Dict[str, Any]]:
        """
        Delete a document and return its pre-delete state (or `None` if it did not exist).

        Raises:
            `InvalidIdError`: If `record_id` is malformed.
        """
        filter = {"_id": to_object_id(record_id)}
        return await self._execute("delete_by_id", self.collection.find_one_and_delete(filter), filter)

    # --- Internals -----------------------------------------------------------

    async def _build_update(self, patch: Mapping[str, Any]) -> Dict[str, Any]:
        patch = dict(patch)
        if any(key.startswith("$") for key in patch):
            update = {operator: dict(value) for operator, value in patch.items()}
        else:
            update = {"$set": patch}

        if "$set" in update:
            fields = await self.prepare_update(update["$set"])
            update["$set"] = self._model.descriptor.validate_fields(fields)
        if self._model.descriptor.timestamps:
            update.setdefault("$set", {})["updatedAt"] = utcnow()
        return update

    async def _execute(self, operation: str, awaitable: Awaitable[Any], query: Optional[Dict[str, Any]] = None) -> Any:
        """Await one driver call, translating connection loss and unique violations."""
        collection_name = self._model.collection_name
        start_time = time.time()
        db_logger.debug(
            "Starting %s operation on collection '%s' - Query: %s",
            operation,
            collection_name,
            sanitize_for_logging(query or {}),
        )
        try:
            result = await awaitable
        except DuplicateKeyError as e:
            db_logger.warning("%s on '%s' violated a unique index: %s", operation, collection_name, e)
            raise DuplicateRecordError(f"Duplicate value for a unique field in '{collection_name}'") from e
        except (ConnectionFailure, InvalidOperation) as e:
            # InvalidOperation: the client was closed under a live accessor.
            perf_logger.error("%s on '%s' failed after %.3fs", operation, collection_name, time.time() - start_time)
            db_logger.error("%s operation failed on collection '%s': %s", operation, collection_name, e)
            raise StoreUnavailableError(f"Store unavailable during {operation} on '{collection_name}': {e}") from e
        perf_logger.debug("%s on '%s' completed in %.3fs", operation, collection_name, time.time() - start_time)
        return result
