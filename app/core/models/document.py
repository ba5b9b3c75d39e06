"""Generic document row. Every collection of the document store lives in this one table."""
from datetime import datetime

from sqlalchemy import JSON, Column, DateTime, Integer, String

from app.db.session import Base


class Document(Base):
    """One keyed document: (collection, doc_id) -> JSON body. version bumps on every write."""

    __tablename__ = "documents"

    collection = Column(String(64), primary_key=True)
    doc_id = Column(String(255), primary_key=True)
    data = Column(JSON, nullable=False, default=dict)
    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)
