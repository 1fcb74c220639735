"""
# Log Sink

A tenant-scoped, durable log destination backed by a MongoDB collection, optionally mirrored to
the console through the package logger.

## Retention

A log collection uses exactly one retention strategy, enforced by MongoDB itself:

| Strategy | Configuration | Collection |
|----------|---------------|------------|
| Fixed capacity | `capped=CappedRetention(max_size_bytes, max_docs)` | Capped collection (`size`, `max`) |
| Time to live | `retention_days` (1-365) | TTL index `timestamp_ttl` on `{timestamp: 1}` |
| None | neither | Plain collection |

Requesting both raises `ConflictingRetentionError` before any database work.

## Connection Ownership

`LogSink.connect(config, shared=handle)` writes through the tenant's own connection and never
closes it. `LogSink.connect(config, db_url=...)` opens a dedicated client that the sink owns and
closes on `disconnect()`. The choice is fixed at connect time.

## Failure Semantics

`write()` never raises. A failing transport is reported through the `on_error` callback and the
package logger, the remaining transports still run, and `write()` returns `False`.

## Usage

```python
sink = await LogSink.connect(LogSinkConfig(collection_name="logs", retention_days=30), shared=handle)
await sink.info("User signed in", user_id="42")
logging.getLogger("myapp").addHandler(sink.handler(logging.WARNING))
await sink.disconnect()
```
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from concurrent.futures import Future
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Set

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorCollection, AsyncIOMotorDatabase
from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic import ValidationError as PydanticValidationError
from pymongo import ASCENDING
from pymongo.errors import (
    CollectionInvalid,
    ConfigurationError,
    ConnectionFailure,
    InvalidURI,
    OperationFailure,
    PyMongoError,
)

from tenant_mongodb.config import TenantConfig, settings
from tenant_mongodb.database.manager import ConnectionHandle
from tenant_mongodb.errors import (
    ConfigError,
    ConflictingRetentionError,
    StoreConnectionError,
    StoreUnavailableError,
    join_error_messages,
)
from tenant_mongodb.managers.logging_manager import get_logger

logger = get_logger(prefix="[LogSink]")
perf_logger = get_logger(prefix="[DB_PERFORMANCE]")

DEFAULT_LOG_COLLECTION = "logs"
TTL_INDEX_NAME = "timestamp_ttl"
SECONDS_PER_DAY = 86400
BYTES_PER_MB = 1024 * 1024

# Records carrying this attribute were produced by the sink itself and are not forwarded back.
SINK_RECORD_FLAG = "tenant_mongodb_log_sink"

ErrorCallback = Callable[[Exception, "LogEntry"], None]


class CappedRetention(BaseModel):
    """Fixed-capacity retention: MongoDB evicts the oldest entries first."""

    model_config = ConfigDict(frozen=True)

    max_size_bytes: int = Field(..., gt=0)
    max_docs: Optional[int] = Field(None, gt=0)


class LogSinkConfig(BaseModel):
    """
    Settings of one log sink.

    Attributes:
        collection_name (str): Target collection.
        console_mirror (bool): Also emit every entry through the package logger.
        retention_days (Optional[int]): TTL retention in days (1-365).
        capped (Optional[CappedRetention]): Capped-collection retention.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    collection_name: str = Field(..., min_length=1, max_length=255)
    console_mirror: bool = True
    retention_days: Optional[int] = Field(None, ge=1, le=365)
    capped: Optional[CappedRetention] = None

    @model_validator(mode="after")
    def check_single_retention(self) -> "LogSinkConfig":
        if self.retention_days is not None and self.capped is not None:
            raise ConflictingRetentionError(
                "A log collection cannot be both capped and expire by TTL; choose one retention strategy"
            )
        return self

    @property
    def ttl_seconds(self) -> Optional[int]:
        return self.retention_days * SECONDS_PER_DAY if self.retention_days else None

    @classmethod
    def from_tenant_config(cls, config: TenantConfig) -> "LogSinkConfig":
        """
        Map the `log_*` settings of a tenant onto a sink config.

        Raises:
            ConflictingRetentionError: If `log_capped` and `log_expiration_days` are both set.
            ConfigError: If `log_capped` is set without `log_max_size`, or a value is invalid.
        """
        if config.log_capped and config.log_expiration_days is not None:
            raise ConflictingRetentionError(
                "log_capped and log_expiration_days are mutually exclusive retention settings"
            )

        capped = None
        if config.log_capped:
            if config.log_max_size is None:
                raise ConfigError("log_max_size is required when log_capped is enabled")
            capped = CappedRetention(max_size_bytes=config.log_max_size * BYTES_PER_MB, max_docs=config.log_max_docs)

        try:
            return cls(
                collection_name=config.log_collection_name or DEFAULT_LOG_COLLECTION,
                console_mirror=config.log_console,
                retention_days=config.log_expiration_days,
                capped=capped,
            )
        except PydanticValidationError as exc:
            raise ConfigError(join_error_messages(exc.errors())) from exc


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class LogEntry:
    level: str
    message: str
    meta: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)

    def to_document(self) -> Dict[str, Any]:
        return {"level": self.level, "message": self.message, "meta": self.meta, "timestamp": self.timestamp}


class LogTransport(ABC):
    """One destination a `LogSink` writes to."""

    name = "transport"

    @property
    def owns_connection(self) -> bool:
        return False

    @abstractmethod
    async def write(self, entry: LogEntry) -> None:
        """Persist or emit one entry. May raise; the sink reports the failure."""

    async def close(self) -> None:
        """Release resources held by the transport."""


class ConsoleTransport(LogTransport):
    """Mirrors entries to the package logger, tagged with the collection name."""

    name = "console"

    def __init__(self, collection_name: str):
        self.console = get_logger(name="console", prefix=f"[{collection_name}]")

    async def write(self, entry: LogEntry) -> None:
        level = logging.getLevelName(entry.level.upper())
        if not isinstance(level, int):
            level = logging.INFO
        if entry.meta:
            self.console.log(level, "%s %s", entry.message, entry.meta, extra={SINK_RECORD_FLAG: True})
        else:
            self.console.log(level, "%s", entry.message, extra={SINK_RECORD_FLAG: True})


class MongoTransport(LogTransport):
    """Inserts entries into the log collection."""

    name = "mongodb"

    def __init__(
        self,
        collection: AsyncIOMotorCollection,
        client: Optional[AsyncIOMotorClient] = None,
        owns_connection: bool = False,
    ):
        self.collection: Optional[AsyncIOMotorCollection] = collection
        self.client = client
        self._owns_connection = owns_connection

    @property
    def owns_connection(self) -> bool:
        return self._owns_connection

    async def write(self, entry: LogEntry) -> None:
        if self.collection is None:
            raise StoreUnavailableError("Log sink is not connected to the database.")
        try:
            await self.collection.insert_one(entry.to_document())
        except ConnectionFailure as e:
            raise StoreUnavailableError(f"Log write failed: {e}") from e

    async def close(self) -> None:
        client, self.client = self.client, None
        self.collection = None
        if client is not None and self._owns_connection:
            client.close()


async def provision_log_collection(database: AsyncIOMotorDatabase, config: LogSinkConfig) -> AsyncIOMotorCollection:
    """
    Create the log collection with its retention policy if it does not exist yet.

    Capped collections are created with `size` (and `max` when set). TTL retention adds the
    `timestamp_ttl` index unless an index with that name already exists.

    Returns:
        `AsyncIOMotorCollection`: The log collection.
    """
    name = config.collection_name
    start_time = time.time()

    existing = await database.list_collection_names(filter={"name": name})
    if name not in existing:
        options: Dict[str, Any] = {}
        if config.capped is not None:
            options = {"capped": True, "size": config.capped.max_size_bytes}
            if config.capped.max_docs:
                options["max"] = config.capped.max_docs
        try:
            await database.create_collection(name, **options)
            logger.info("Created log collection '%s'%s", name, " (capped)" if options else "")
        except CollectionInvalid:
            logger.debug("Log collection '%s' was created concurrently", name)
    elif config.capped is not None:
        logger.debug("Log collection '%s' exists; capped options are left unchanged", name)

    collection = database[name]

    if config.ttl_seconds is not None:
        indexes = await collection.index_information()
        current = indexes.get(TTL_INDEX_NAME)
        if current is None:
            try:
                await collection.create_index(
                    [("timestamp", ASCENDING)], name=TTL_INDEX_NAME, expireAfterSeconds=config.ttl_seconds
                )
                logger.info("Created TTL index on '%s' (%d days)", name, config.retention_days)
            except OperationFailure as e:
                logger.warning("Failed to create TTL index on log collection '%s': %s", name, e)
        elif current.get("expireAfterSeconds") != config.ttl_seconds:
            logger.warning(
                "TTL index on '%s' expires after %ss, configured %ss; existing index kept",
                name,
                current.get("expireAfterSeconds"),
                config.ttl_seconds,
            )

    perf_logger.debug("Log collection '%s' provisioned in %.3fs", name, time.time() - start_time)
    return collection


class MongoLogHandler(logging.Handler):
    """
    A `logging.Handler` that forwards standard log records to a `LogSink`.

    `emit()` is synchronous, so each record is scheduled as a write on the sink's event loop;
    `LogSink.drain()` waits for the scheduled writes.
    """

    def __init__(self, sink: "LogSink", level: int = logging.NOTSET):
        super().__init__(level)
        self.sink = sink

    def emit(self, record: logging.LogRecord) -> None:
        if getattr(record, SINK_RECORD_FLAG, False):
            return
        try:
            meta: Dict[str, Any] = {"logger": record.name, "module": record.module, "line": record.lineno}
            if record.exc_info:
                meta["exception"] = self.formatException(record.exc_info)
            self.sink.schedule(record.levelname.lower(), record.getMessage(), meta)
        except Exception:
            self.handleError(record)


class LogSink:
    """
    Writes log entries to every configured transport.

    Use `LogSink.connect()` to build one; the constructor only wires already-open transports.

    Args:
        config (`LogSinkConfig`): Sink settings.
        transports (`List[LogTransport]`): Destinations, written in order.
        on_error (`Optional[Callable[[Exception, LogEntry], None]]`): Error channel for transport
            failures.
    """

    def __init__(
        self,
        config: LogSinkConfig,
        transports: List[LogTransport],
        on_error: Optional[ErrorCallback] = None,
    ):
        self.config = config
        self.transports = transports
        self.on_error = on_error
        self._closed = False
        self._pending_tasks: Set[asyncio.Task] = set()
        self._pending_futures: Set[Future] = set()
        try:
            self._loop: Optional[asyncio.AbstractEventLoop] = asyncio.get_running_loop()
        except RuntimeError:
            self._loop = None

    @classmethod
    async def connect(
        cls,
        config: LogSinkConfig,
        db_url: Optional[str] = None,
        shared: Optional[ConnectionHandle] = None,
        on_error: Optional[ErrorCallback] = None,
    ) -> "LogSink":
        """
        Open the sink and provision its collection.

        Args:
            config (`LogSinkConfig`): Sink settings.
            db_url (`Optional[str]`): URI for a dedicated connection. Ignored when `shared` is given.
            shared (`Optional[ConnectionHandle]`): A connected tenant handle to reuse without owning.
            on_error: Error channel for transport failures.

        Raises:
            `ConfigError`: If neither a shared handle nor a valid `db_url` is available.
            `StoreConnectionError`: If a dedicated connection cannot reach the server.
            `StoreUnavailableError`: If the shared handle is not connected.
        """
        start_time = time.time()
        if shared is not None:
            if not shared.is_connected or shared.database is None:
                raise StoreUnavailableError(f"Shared connection of tenant '{shared.tenant_id}' is not open.")
            client, database, owns = shared.client, shared.database, False
        else:
            client, database = await _open_dedicated_client(db_url)
            owns = True

        try:
            collection = await provision_log_collection(database, config)
        except PyMongoError as e:
            if owns:
                client.close()
            logger.error("Failed to provision log collection '%s': %s", config.collection_name, e)
            raise StoreConnectionError(f"Failed to provision log collection: {e}") from e

        transports: List[LogTransport] = [MongoTransport(collection, client if owns else None, owns)]
        if config.console_mirror:
            transports.append(ConsoleTransport(config.collection_name))

        perf_logger.info("Log sink '%s' connected in %.3fs", config.collection_name, time.time() - start_time)
        logger.info(
            "Log sink connected to '%s.%s' (%s connection)",
            database.name,
            config.collection_name,
            "dedicated" if owns else "shared",
        )
        return cls(config, transports, on_error=on_error)

    @property
    def owns_connection(self) -> bool:
        return any(transport.owns_connection for transport in self.transports)

    @property
    def closed(self) -> bool:
        return self._closed

    async def write(self, level: str, message: Any, meta: Optional[Dict[str, Any]] = None) -> bool:
        """
        Write one entry to every transport.

        Returns:
            `bool`: `True` if every transport accepted the entry, `False` otherwise. Never raises.
        """
        entry = LogEntry(level=str(level).lower(), message=str(message), meta=dict(meta or {}))
        if self._closed:
            self._report(StoreUnavailableError("Log sink is disconnected."), entry, "sink")
            return False

        ok = True
        for transport in self.transports:
            try:
                await transport.write(entry)
            except Exception as e:
                ok = False
                self._report(e, entry, transport.name)
        return ok

    async def debug(self, message: Any, **meta: Any) -> bool:
        return await self.write("debug", message, meta)

    async def info(self, message: Any, **meta: Any) -> bool:
        return await self.write("info", message, meta)

    async def warning(self, message: Any, **meta: Any) -> bool:
        return await self.write("warning", message, meta)

    async def error(self, message: Any, **meta: Any) -> bool:
        return await self.write("error", message, meta)

    async def critical(self, message: Any, **meta: Any) -> bool:
        return await self.write("critical", message, meta)

    def handler(self, level: int = logging.NOTSET) -> MongoLogHandler:
        """Return a `logging.Handler` that forwards records to this sink."""
        return MongoLogHandler(self, level)

    def schedule(self, level: str, message: str, meta: Optional[Dict[str, Any]] = None) -> None:
        """Schedule a `write()` without awaiting it. Safe to call from other threads."""
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None

        if running is not None and (self._loop is None or running is self._loop):
            self._loop = running
            task = running.create_task(self.write(level, message, meta))
            self._pending_tasks.add(task)
            task.add_done_callback(self._pending_tasks.discard)
        elif self._loop is not None and not self._loop.is_closed():
            future = asyncio.run_coroutine_threadsafe(self.write(level, message, meta), self._loop)
            self._pending_futures.add(future)
            future.add_done_callback(self._pending_futures.discard)
        else:
            logger.warning("Dropped log record, no event loop available: %s", message, extra={SINK_RECORD_FLAG: True})

    async def drain(self) -> None:
        """Wait until every scheduled write has finished."""
        while self._pending_tasks or self._pending_futures:
            waiters = list(self._pending_tasks) + [asyncio.wrap_future(f) for f in list(self._pending_futures)]
            await asyncio.gather(*waiters, return_exceptions=True)

    async def disconnect(self) -> None:
        """
        Close every transport. Idempotent and never raises.

        Pending writes scheduled through `handler()` are drained first.
        """
        if self._closed:
            logger.warning("disconnect: log sink '%s' already closed", self.config.collection_name)
            return

        await self.drain()
        self._closed = True
        for transport in self.transports:
            try:
                await transport.close()
            except Exception as e:
                logger.error("Error closing %s log transport: %s", transport.name, e, extra={SINK_RECORD_FLAG: True})
        logger.info("Log sink '%s' closed", self.config.collection_name)

    def _report(self, error: Exception, entry: LogEntry, transport_name: str) -> None:
        logger.error(
            "Log transport '%s' failed for %s entry: %s",
            transport_name,
            entry.level,
            error,
            extra={SINK_RECORD_FLAG: True},
        )
        if self.on_error is not None:
            try:
                self.on_error(error, entry)
            except Exception as e:
                logger.error("Log sink error callback failed: %s", e, extra={SINK_RECORD_FLAG: True})


async def _open_dedicated_client(db_url: Optional[str]):
    """Open and ping a client owned by the sink. Returns `(client, database)`."""
    if not db_url:
        raise ConfigError("Missing MongoDB connection URL (db_url) for the log sink.")
    try:
        client = AsyncIOMotorClient(
            db_url,
            serverSelectionTimeoutMS=settings.MONGODB_SERVER_SELECTION_TIMEOUT,
            connectTimeoutMS=settings.MONGODB_CONNECTION_TIMEOUT,
            tz_aware=True,
        )
        database = client.get_default_database(default=settings.DEFAULT_DATABASE_NAME)
    except (InvalidURI, ConfigurationError) as e:
        raise ConfigError(f"Invalid log database URI: {e}") from e

    try:
        await client.admin.command("ping")
    except (ConnectionFailure, OperationFailure) as e:
        client.close()
        logger.error("Log sink could not reach the database: %s", e)
        raise StoreConnectionError(f"Failed to connect log sink to database: {e}") from e
    return client, database
