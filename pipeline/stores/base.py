"""
Abstract Data Store used for jobs, executions and pipeline source/target data
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union
import uuid

from models.base import WriteMode


def new_document_key() -> str:
    return uuid.uuid4().hex


class DataStore(ABC):
    """
    Document-collection persistence backend.

    Contract:
    - Documents are keyed per collection; ``query``/``get`` return the key
      under ``"id"`` merged with the stored body
    - ``write`` modes: append inserts under a generated key, overwrite
      replaces the document keyed by the record's ``"id"`` (inserting if
      absent), upsert merges into it (inserting if absent)
    - Per-document failures return False; connectivity failures raise
      ``StoreUnavailableError``
    """

    @abstractmethod
    async def query(
        self,
        collection: str,
        filters: Optional[Sequence[Any]] = None,
        order_by: Optional[Sequence[Any]] = None,
        limit: Optional[int] = None
    ) -> List[Dict[str, Any]]:
        """
        Query a collection.

        Args:
            collection: Collection name
            filters: Conditions with ``field``/``operator``/``value``
            order_by: Orderings with ``field``/``direction``
            limit: Maximum number of documents

        Returns:
            List of documents
        """
        pass

    @abstractmethod
    async def write(
        self,
        collection: str,
        record: Dict[str, Any],
        mode: Union[WriteMode, str] = WriteMode.APPEND
    ) -> bool:
        """Write one document using the given mode"""
        pass

    @abstractmethod
    async def update(self, collection: str, doc_id: str, fields: Dict[str, Any]) -> bool:
        """Merge fields into an existing document; False if it does not exist"""
        pass

    @abstractmethod
    async def delete(self, collection: str, doc_id: str) -> bool:
        """Delete a document; False if it does not exist"""
        pass

    @abstractmethod
    async def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        """Fetch one document by key"""
        pass

    async def ping(self) -> bool:
        """Connectivity check used by the health endpoint"""
        return True

    async def initialize(self) -> None:
        pass

    async def close(self) -> None:
        pass

    @staticmethod
    def split_key(
        record: Dict[str, Any],
        mode: WriteMode
    ) -> Tuple[Optional[str], Dict[str, Any]]:
        """
        Separate the document key from the body for a write.

        Returns:
            (key, body); key is None when an overwrite has no ``"id"``
        """
        body = dict(record)
        key = body.pop("id", None)
        if mode == WriteMode.APPEND:
            return new_document_key(), body
        if key is None:
            if mode == WriteMode.OVERWRITE:
                return None, body
            return new_document_key(), body
        return str(key), body
