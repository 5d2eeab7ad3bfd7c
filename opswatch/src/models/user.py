"""
Read-only view of the user directory owned by the auth service.
"""

from sqlalchemy import Column, String, Uuid
import uuid

from opswatch.src.db.database import Base

class User(Base):
    __tablename__ = "users"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(String(255), nullable=False)
    email = Column(String(255), nullable=False, unique=True)
    delivery_email = Column(String(255))
