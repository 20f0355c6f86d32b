"""
Unit tests for the Load stage
"""

import pytest
from unittest.mock import AsyncMock

from core.exceptions import LoadError, StoreUnavailableError
from models.base import LogLevel
from pipeline.loaders.collection_loader import CollectionLoader, LoadResult
from pipeline.stores.memory import MemoryDataStore
from schemas.job import TargetConfig


class TestCollectionLoader:
    """Test record writes and failure accounting"""

    @pytest.mark.asyncio
    async def test_append_writes_every_record(self):
        store = MemoryDataStore()
        records = [{"n": 1}, {"n": 2}, {"n": 3}]

        result = await CollectionLoader(store).load(TargetConfig(collection="out"), records)

        assert result.success == 3
        assert result.failed == 0
        assert store.count("out") == 3

    @pytest.mark.asyncio
    async def test_upsert_is_idempotent(self):
        store = MemoryDataStore()
        loader = CollectionLoader(store)
        target = TargetConfig(collection="out", write_mode="upsert")

        await loader.load(target, [{"id": "a", "n": 1}])
        await loader.load(target, [{"id": "a", "m": 2}])

        assert store.count("out") == 1
        assert await store.get("out", "a") == {"id": "a", "n": 1, "m": 2}

    @pytest.mark.asyncio
    async def test_rejected_writes_are_counted_and_logged(self):
        store = MemoryDataStore()
        logs = []
        records = [{"id": "a"}, {"name": "no id"}, {"id": "c"}]

        # Overwrite requires an id, so the second record is rejected
        result = await CollectionLoader(store).load(
            TargetConfig(collection="out", write_mode="overwrite"),
            records,
            lambda level, message, context=None: logs.append((level, message))
        )

        assert result.success == 2
        assert result.failed == 1
        assert result.failures[0][0] == 1
        assert logs == [(LogLevel.ERROR, "Failed to write record 1: store rejected write")]

    @pytest.mark.asyncio
    async def test_max_failures_aborts_load(self):
        store = MemoryDataStore()
        store.write = AsyncMock(return_value=False)
        result = LoadResult()

        with pytest.raises(LoadError):
            await CollectionLoader(store).load(
                TargetConfig(collection="out", max_failures=2),
                [{"n": i} for i in range(5)],
                result=result
            )

        assert result.failed == 2
        assert store.write.await_count == 2

    @pytest.mark.asyncio
    async def test_store_unavailable_aborts_load(self):
        store = MemoryDataStore()
        store.write = AsyncMock(side_effect=[True, StoreUnavailableError("gone")])
        result = LoadResult()

        with pytest.raises(LoadError) as exc_info:
            await CollectionLoader(store).load(
                TargetConfig(collection="out"), [{"n": 1}, {"n": 2}, {"n": 3}], result=result
            )

        assert result.success == 1
        assert exc_info.value.context["records_written"] == 1
