import uuid
from datetime import datetime

from sqlalchemy import Column, DateTime, LargeBinary, String

from checkout.db.base_class import Base


class StoredDocument(Base):
    """A generated attachment, kept so it can be fetched again later."""

    __tablename__ = "documents"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    # e.g. "invoice:SC-20250101-ABC123"; one document per key
    key = Column(String(128), nullable=False, unique=True, index=True)
    kind = Column(String(32), nullable=False)
    filename = Column(String(200), nullable=False)
    content_type = Column(String(100), nullable=False)
    content = Column(LargeBinary, nullable=False)
    payment_reference = Column(String(64), nullable=True, index=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
