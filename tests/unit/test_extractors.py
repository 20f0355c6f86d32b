"""
Unit tests for the Extract stage
"""

import pytest
from unittest.mock import AsyncMock

from core.exceptions import ExtractError, StoreUnavailableError
from pipeline.extractors.collection_extractor import CollectionExtractor
from pipeline.stores.memory import MemoryDataStore
from schemas.job import SourceConfig


class TestCollectionExtractor:

    @pytest.mark.asyncio
    async def test_extract_applies_source_query(self):
        store = MemoryDataStore({"orders": [
            {"id": "1", "status": "paid", "amount": 20},
            {"id": "2", "status": "open", "amount": 50},
            {"id": "3", "status": "paid", "amount": 70},
        ]})
        source = SourceConfig(
            collection="orders",
            filters=[{"field": "status", "operator": "==", "value": "paid"}],
            order_by=[{"field": "amount", "direction": "desc"}],
            limit=1
        )

        records = await CollectionExtractor(store).extract(source)

        assert records == [{"id": "3", "status": "paid", "amount": 70}]

    @pytest.mark.asyncio
    async def test_missing_collection_is_empty(self):
        records = await CollectionExtractor(MemoryDataStore()).extract(SourceConfig(collection="nothing"))
        assert records == []

    @pytest.mark.asyncio
    async def test_store_unavailable_becomes_extract_error(self):
        store = MemoryDataStore()
        store.query = AsyncMock(side_effect=StoreUnavailableError("connection refused"))

        with pytest.raises(ExtractError) as exc_info:
            await CollectionExtractor(store).extract(SourceConfig(collection="orders"))

        assert exc_info.value.context["collection"] == "orders"
        assert isinstance(exc_info.value.original_exception, StoreUnavailableError)

    @pytest.mark.asyncio
    async def test_unexpected_error_becomes_extract_error(self):
        store = MemoryDataStore()
        store.query = AsyncMock(side_effect=RuntimeError("driver bug"))

        with pytest.raises(ExtractError):
            await CollectionExtractor(store).extract(SourceConfig(collection="orders"))
