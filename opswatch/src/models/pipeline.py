from sqlalchemy import (
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from enum import Enum
import uuid

from opswatch.src.db.database import Base

class PipelineStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    RUNNING = "running"
    COMPLETED = "completed"

class ServiceType(str, Enum):
    MACRO = "macro"
    MICRO = "micro"

class Service(Base):
    __tablename__ = "services"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    gitlab_repo_id = Column(String(255), nullable=False)
    name = Column(String(255), nullable=False)
    url = Column(String(500), nullable=False)
    type = Column(String(10), nullable=False)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

class PipelineUnit(Base):
    __tablename__ = "pipeline_units"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    macro_service_id = Column(Uuid(as_uuid=True), ForeignKey("services.id"))
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    macro_service = relationship("Service")
    dependencies = relationship(
        "PipelineUnitDependency",
        back_populates="unit",
        order_by="PipelineUnitDependency.order_index",
    )
    runs = relationship("PipelineRun", back_populates="unit")

    @property
    def micro_service_ids(self):
        return [dep.micro_service_id for dep in self.dependencies]

class PipelineUnitDependency(Base):
    __tablename__ = "pipeline_unit_dependencies"
    __table_args__ = (
        UniqueConstraint("pipeline_unit_id", "order_index", name="uq_unit_dependency_order"),
    )

    pipeline_unit_id = Column(
        Uuid(as_uuid=True), ForeignKey("pipeline_units.id", ondelete="CASCADE"), primary_key=True
    )
    micro_service_id = Column(Uuid(as_uuid=True), ForeignKey("services.id"), primary_key=True)
    order_index = Column(Integer, nullable=False)

    unit = relationship("PipelineUnit", back_populates="dependencies")
    service = relationship("Service")

class PipelineRun(Base):
    __tablename__ = "pipeline_runs"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    pipeline_unit_id = Column(
        Uuid(as_uuid=True), ForeignKey("pipeline_units.id", ondelete="CASCADE"), nullable=False
    )
    status = Column(String(50), nullable=False, default=PipelineStatus.PENDING.value)
    selected_micro_service_ids = Column(JSON().with_variant(JSONB(), "postgresql"), nullable=False, default=list)
    gitlab_pipeline_id = Column(Integer)
    approver_id = Column(Uuid(as_uuid=True))
    execution_time = Column(Float)  # seconds
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    unit = relationship("PipelineUnit", back_populates="runs")
    authorization_request = relationship(
        "AuthorizationRequest", back_populates="run", uselist=False
    )
    histories = relationship("ExecutionHistory", back_populates="run")

    @property
    def selected_ids(self):
        return [uuid.UUID(str(value)) for value in (self.selected_micro_service_ids or [])]

class AuthorizationRequest(Base):
    __tablename__ = "authorization_requests"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    pipeline_run_id = Column(
        Uuid(as_uuid=True), ForeignKey("pipeline_runs.id", ondelete="CASCADE"),
        nullable=False, unique=True,
    )
    requester_id = Column(Uuid(as_uuid=True), nullable=False)
    approver_id = Column(Uuid(as_uuid=True))
    status = Column(String(50), nullable=False, default=PipelineStatus.PENDING.value)
    comment = Column(Text, default="")
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    run = relationship("PipelineRun", back_populates="authorization_request")

class ExecutionHistory(Base):
    __tablename__ = "execution_histories"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    pipeline_run_id = Column(
        Uuid(as_uuid=True), ForeignKey("pipeline_runs.id", ondelete="CASCADE"), nullable=False, index=True
    )
    requester_id = Column(Uuid(as_uuid=True), nullable=False)
    approver_id = Column(Uuid(as_uuid=True))
    status = Column(String(50), nullable=False)
    started_at = Column(DateTime(timezone=True), nullable=False)
    completed_at = Column(DateTime(timezone=True))
    execution_time = Column(Float)  # seconds
    error_message = Column(Text)
    macro_service_name = Column(String(255))
    micro_service_names = Column(JSON().with_variant(JSONB(), "postgresql"), default=list)

    run = relationship("PipelineRun", back_populates="histories")
