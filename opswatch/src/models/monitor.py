from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from opswatch.src.db.database import Base

class Endpoint(Base):
    __tablename__ = "endpoints"
    __table_args__ = (
        UniqueConstraint(
            "url", "api_method", "server_name", "expected_status_code",
            name="uq_endpoint_identity",
        ),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    service_name = Column(String(255), nullable=False)
    url = Column(String(1000), nullable=False)
    server_name = Column(String(255), nullable=False)
    api_method = Column(String(10), nullable=False, default="GET")
    expected_status_code = Column(Integer, nullable=False, default=200)

    gitlab_url = Column(String(500))
    docker_container_name = Column(String(255))
    kubernetes_pod_name = Column(String(255))
    tags = Column(JSON().with_variant(JSONB(), "postgresql"))
    description = Column(Text)
    last_changed_by = Column(String(255))

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    stats = relationship("EndpointStats", back_populates="endpoint", uselist=False)

class Check(Base):
    __tablename__ = "checks"

    id = Column(Integer, primary_key=True, autoincrement=True)
    endpoint_id = Column(Integer, ForeignKey("endpoints.id", ondelete="CASCADE"), nullable=False, index=True)
    status_code = Column(Integer)
    latency_ms = Column(Float, nullable=False)
    error = Column(Text)
    checked_at = Column(DateTime, server_default=func.now())

class EndpointStats(Base):
    __tablename__ = "endpoint_stats"

    endpoint_id = Column(Integer, ForeignKey("endpoints.id", ondelete="CASCADE"), primary_key=True)
    total_checks = Column(Integer, nullable=False, default=0)
    total_latency = Column(Float, nullable=False, default=0)
    successful_checks = Column(Integer, nullable=False, default=0)
    failure_count = Column(Integer, nullable=False, default=0)
    last_run = Column(Boolean, nullable=False, default=False)
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    endpoint = relationship("Endpoint", back_populates="stats")
