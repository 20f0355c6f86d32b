from sqlalchemy import Column, String, BigInteger, Integer, DateTime, JSON, Index
from sqlalchemy.dialects.postgresql import JSONB
from core.clock import utcnow
from models.base import Base


class StoredDocument(Base):
    """
    One document in a named collection of the data store.

    Purpose:
    - Persist job definitions, executions and pipeline source/target data
    - Give every collection the same query/write/update/delete contract

    Design:
    - (collection, document_id) is unique; document_id is the record's "id"
    - payload holds the record body (JSONB on PostgreSQL, JSON elsewhere)
    """
    __tablename__ = "pipeline_documents"

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)

    # Document identification
    collection = Column(String(200), nullable=False, index=True)
    document_id = Column(String(255), nullable=False)

    # Document body
    payload = Column(JSON().with_variant(JSONB, "postgresql"), nullable=False)

    # Timestamps
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("idx_document_collection_key", "collection", "document_id", unique=True),
    )
