"""
In-process Data Store backed by dictionaries.

Used for tests and for running the orchestrator without a database. Stored
and returned documents are deep copies, so callers can never mutate store
state by holding on to a reference.
"""

from typing import Any, Dict, List, Optional, Union
import copy
import logging

from models.base import WriteMode
from pipeline.query import apply_query
from pipeline.stores.base import DataStore

logger = logging.getLogger(__name__)


class MemoryDataStore(DataStore):

    def __init__(self, initial: Optional[Dict[str, List[Dict[str, Any]]]] = None):
        self._collections: Dict[str, Dict[str, Dict[str, Any]]] = {}
        for collection, records in (initial or {}).items():
            for record in records:
                mode = WriteMode.UPSERT if "id" in record else WriteMode.APPEND
                self._write_sync(collection, record, mode)

    def _write_sync(self, collection: str, record: Dict[str, Any], mode: WriteMode) -> bool:
        key, body = self.split_key(record, mode)
        if key is None:
            logger.warning(f"Overwrite into {collection} without an 'id' field rejected")
            return False

        docs = self._collections.setdefault(collection, {})
        body = copy.deepcopy(body)
        if mode == WriteMode.UPSERT and key in docs:
            docs[key].update(body)
        else:
            docs[key] = body
        return True

    @staticmethod
    def _as_document(key: str, body: Dict[str, Any]) -> Dict[str, Any]:
        document = copy.deepcopy(body)
        document["id"] = key
        return document

    async def query(self, collection, filters=None, order_by=None, limit=None):
        docs = self._collections.get(collection, {})
        records = [self._as_document(key, body) for key, body in docs.items()]
        return apply_query(records, filters, order_by, limit)

    async def write(self, collection, record, mode: Union[WriteMode, str] = WriteMode.APPEND):
        return self._write_sync(collection, record, WriteMode(mode))

    async def update(self, collection, doc_id, fields):
        docs = self._collections.get(collection, {})
        if doc_id not in docs:
            return False
        body = copy.deepcopy(fields)
        body.pop("id", None)
        docs[doc_id].update(body)
        return True

    async def delete(self, collection, doc_id):
        docs = self._collections.get(collection, {})
        return docs.pop(doc_id, None) is not None

    async def get(self, collection, doc_id):
        body = self._collections.get(collection, {}).get(doc_id)
        if body is None:
            return None
        return self._as_document(doc_id, body)

    def count(self, collection: str) -> int:
        return len(self._collections.get(collection, {}))
