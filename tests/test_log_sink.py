import logging
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from pydantic import ValidationError as PydanticValidationError
from pymongo.errors import AutoReconnect, ServerSelectionTimeoutError

from tenant_mongodb.config import TenantConfig
from tenant_mongodb.database.log_sink import (
    TTL_INDEX_NAME,
    CappedRetention,
    LogSink,
    LogSinkConfig,
    MongoTransport,
    provision_log_collection,
)
from tenant_mongodb.database.manager import ConnectionManager
from tenant_mongodb.errors import ConfigError, ConflictingRetentionError, StoreConnectionError, StoreUnavailableError

DB_URL = "mongodb://localhost:27017/tenant_test"


def tenant_config(**log_settings):
    return TenantConfig(tenant_id="acme", db_url=DB_URL, **log_settings)


def test_conflicting_retention_is_rejected():
    with pytest.raises(ConflictingRetentionError):
        LogSinkConfig(collection_name="logs", retention_days=7, capped=CappedRetention(max_size_bytes=1024))


def test_retention_days_are_bounded():
    with pytest.raises(PydanticValidationError):
        LogSinkConfig(collection_name="logs", retention_days=366)


def test_from_tenant_config_maps_capped_settings():
    config = LogSinkConfig.from_tenant_config(
        tenant_config(log_collection_name="audit", log_capped=True, log_max_size=5, log_max_docs=1000, log_console=False)
    )

    assert config.collection_name == "audit"
    assert config.console_mirror is False
    assert config.capped == CappedRetention(max_size_bytes=5 * 1024 * 1024, max_docs=1000)
    assert config.retention_days is None


def test_from_tenant_config_maps_ttl_settings():
    config = LogSinkConfig.from_tenant_config(tenant_config(log_expiration_days=30))

    assert config.collection_name == "logs"
    assert config.ttl_seconds == 30 * 86400
    assert config.capped is None


def test_from_tenant_config_conflict():
    with pytest.raises(ConflictingRetentionError):
        LogSinkConfig.from_tenant_config(tenant_config(log_capped=True, log_max_size=1, log_expiration_days=3))


def test_capped_without_size_is_config_error():
    with pytest.raises(ConfigError, match="log_max_size"):
        LogSinkConfig.from_tenant_config(tenant_config(log_capped=True))


@pytest.mark.asyncio
async def test_provision_capped_collection(fake_motor):
    database = fake_motor(DB_URL).get_default_database()
    config = LogSinkConfig(collection_name="logs", capped=CappedRetention(max_size_bytes=4096, max_docs=10))

    await provision_log_collection(database, config)

    assert database.collections["logs"].options == {"capped": True, "size": 4096, "max": 10}
    assert TTL_INDEX_NAME not in database.collections["logs"].indexes


@pytest.mark.asyncio
async def test_provision_ttl_index_once(fake_motor):
    database = fake_motor(DB_URL).get_default_database()
    config = LogSinkConfig(collection_name="logs", retention_days=2)

    collection = await provision_log_collection(database, config)
    with patch.object(collection, "create_index", AsyncMock()) as create_index:
        await provision_log_collection(database, config)

    create_index.assert_not_awaited()
    ttl_index = database.collections["logs"].indexes[TTL_INDEX_NAME]
    assert ttl_index["key"] == [("timestamp", 1)]
    assert ttl_index["expireAfterSeconds"] == 2 * 86400
    assert database.collections["logs"].options == {}


@pytest.mark.asyncio
async def test_provision_leaves_existing_collection(fake_motor):
    database = fake_motor(DB_URL).get_default_database()
    await database.create_collection("logs")

    await provision_log_collection(database, LogSinkConfig(collection_name="logs"))

    assert database.created == ["logs"]


@pytest.mark.asyncio
async def test_shared_connection_is_not_owned(fake_motor):
    manager = ConnectionManager("acme")
    handle = await manager.connect(tenant_config())

    sink = await LogSink.connect(LogSinkConfig(collection_name="logs"), shared=handle)
    await sink.disconnect()

    assert sink.owns_connection is False
    assert len(fake_motor.instances) == 1
    assert not fake_motor.instances[0].closed
    assert handle.is_connected


@pytest.mark.asyncio
async def test_dedicated_connection_is_owned_and_closed(fake_motor):
    sink = await LogSink.connect(LogSinkConfig(collection_name="logs"), db_url=DB_URL)

    assert sink.owns_connection is True
    await sink.disconnect()
    assert fake_motor.instances[0].closed


@pytest.mark.asyncio
async def test_connect_requires_url_without_shared_handle():
    with pytest.raises(ConfigError):
        await LogSink.connect(LogSinkConfig(collection_name="logs"))


@pytest.mark.asyncio
async def test_connect_unreachable_server(fake_motor):
    fake_motor.ping_error = ServerSelectionTimeoutError("timeout")

    with pytest.raises(StoreConnectionError):
        await LogSink.connect(LogSinkConfig(collection_name="logs"), db_url=DB_URL)
    assert fake_motor.instances[0].closed


@pytest.mark.asyncio
async def test_connect_with_closed_shared_handle(fake_motor):
    manager = ConnectionManager("acme")
    handle = await manager.connect(tenant_config())
    await manager.disconnect()

    with pytest.raises(StoreUnavailableError):
        await LogSink.connect(LogSinkConfig(collection_name="logs"), shared=handle)


@pytest.mark.asyncio
async def test_write_persists_entry_and_mirrors_to_console(fake_motor, caplog):
    sink = await LogSink.connect(LogSinkConfig(collection_name="logs"), db_url=DB_URL)

    with caplog.at_level(logging.INFO, logger="tenant_mongodb"):
        assert await sink.info("User signed in", user_id="42") is True

    documents = fake_motor.databases["tenant_test"].collections["logs"].documents
    assert len(documents) == 1
    assert documents[0]["level"] == "info"
    assert documents[0]["message"] == "User signed in"
    assert documents[0]["meta"] == {"user_id": "42"}
    assert documents[0]["timestamp"].tzinfo is not None
    assert any("User signed in" in record.getMessage() for record in caplog.records)
    await sink.disconnect()


@pytest.mark.asyncio
async def test_write_failure_is_reported_not_raised(fake_motor, caplog):
    on_error = MagicMock()
    sink = await LogSink.connect(LogSinkConfig(collection_name="logs"), db_url=DB_URL, on_error=on_error)
    mongo = next(t for t in sink.transports if isinstance(t, MongoTransport))

    with caplog.at_level(logging.INFO, logger="tenant_mongodb"):
        with patch.object(mongo.collection, "insert_one", AsyncMock(side_effect=AutoReconnect("reset"))):
            assert await sink.error("disk full") is False

    error, entry = on_error.call_args.args
    assert isinstance(error, StoreUnavailableError)
    assert entry.message == "disk full"
    assert any("disk full" in record.getMessage() for record in caplog.records)
    await sink.disconnect()


@pytest.mark.asyncio
async def test_write_after_disconnect_returns_false():
    on_error = MagicMock()
    sink = await LogSink.connect(LogSinkConfig(collection_name="logs"), db_url=DB_URL, on_error=on_error)
    await sink.disconnect()

    assert await sink.warning("late") is False
    on_error.assert_called_once()


@pytest.mark.asyncio
async def test_disconnect_is_idempotent_and_survives_close_errors():
    sink = await LogSink.connect(LogSinkConfig(collection_name="logs", console_mirror=False), db_url=DB_URL)
    assert len(sink.transports) == 1
    sink.transports[0].close = AsyncMock(side_effect=RuntimeError("boom"))

    await sink.disconnect()
    await sink.disconnect()

    assert sink.closed


@pytest.mark.asyncio
async def test_handler_forwards_stdlib_records(fake_motor):
    sink = await LogSink.connect(LogSinkConfig(collection_name="logs", console_mirror=False), db_url=DB_URL)
    app_logger = logging.getLogger("tests.app")
    app_logger.setLevel(logging.DEBUG)
    handler = sink.handler(logging.WARNING)
    app_logger.addHandler(handler)
    try:
        app_logger.info("ignored")
        app_logger.warning("payment %s failed", "p-1")
        await sink.drain()
    finally:
        app_logger.removeHandler(handler)

    documents = fake_motor.databases["tenant_test"].collections["logs"].documents
    assert [d["message"] for d in documents] == ["payment p-1 failed"]
    assert documents[0]["level"] == "warning"
    assert documents[0]["meta"]["logger"] == "tests.app"
    await sink.disconnect()


@pytest.mark.asyncio
async def test_handler_skips_records_produced_by_the_sink(fake_motor):
    sink = await LogSink.connect(LogSinkConfig(collection_name="logs"), db_url=DB_URL)
    package_logger = logging.getLogger("tenant_mongodb")
    handler = sink.handler()
    package_logger.addHandler(handler)
    try:
        await sink.info("once")
        await sink.drain()
    finally:
        package_logger.removeHandler(handler)

    documents = fake_motor.databases["tenant_test"].collections["logs"].documents
    assert [d["message"] for d in documents] == ["once"]
    await sink.disconnect()
