"""
Extract stage: read source records from a Data Store collection
"""

from typing import Any, Dict, List
import logging

from core.exceptions import ExtractError, PipelineError
from pipeline.stores.base import DataStore
from schemas.job import SourceConfig

logger = logging.getLogger(__name__)


class CollectionExtractor:
    """
    Extract records from a named collection.

    Supports:
    - Field/operator/value filters
    - Multi-field ordering
    - Result limit (bounds the batch size of the whole execution)
    """

    def __init__(self, store: DataStore):
        self.store = store

    async def extract(self, source: SourceConfig) -> List[Dict[str, Any]]:
        """
        Query the source collection.

        Args:
            source: Source descriptor from the job's pipeline config

        Returns:
            List of raw records

        Raises:
            ExtractError: If the store query fails for any reason
        """
        logger.info(f"Extracting from collection {source.collection}")

        try:
            records = await self.store.query(
                source.collection,
                filters=source.filters,
                order_by=source.order_by,
                limit=source.limit
            )
        except PipelineError as e:
            raise ExtractError(
                f"Failed to read source collection {source.collection}",
                context={"collection": source.collection},
                original_exception=e
            )
        except Exception as e:
            raise ExtractError(
                "Unexpected error during extraction",
                context={"collection": source.collection},
                original_exception=e
            )

        logger.info(f"Extracted {len(records)} records from {source.collection}")
        return records
