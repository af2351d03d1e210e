"""SQLAlchemy database models for the pipeline engine."""

from datetime import datetime

from sqlalchemy import JSON, BigInteger, Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship

from .database import Base


class WorkflowModel(Base):
    """Database model for pipeline workflows."""
    __tablename__ = "pipeline_workflows"

    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    definition = Column(JSON, nullable=False)  # Complete workflow document, camelCase keys
    created_at = Column(BigInteger, nullable=False)  # epoch ms
    updated_at = Column(BigInteger, nullable=False)  # epoch ms

    runs = relationship("RunModel", back_populates="workflow", cascade="all, delete-orphan")


class RunModel(Base):
    """Database model for finished runs."""
    __tablename__ = "pipeline_runs"

    id = Column(String, primary_key=True)
    workflow_id = Column(String, ForeignKey("pipeline_workflows.id"), nullable=False, index=True)
    outcome = Column(String)  # succeeded, partial, failed
    started_at = Column(DateTime, nullable=False)
    finished_at = Column(DateTime)
    nodes = Column(JSON, nullable=False)  # nodeId -> {status, attempts, error, output}
    saved_at = Column(DateTime, default=datetime.utcnow)

    workflow = relationship("WorkflowModel", back_populates="runs")
    events = relationship(
        "RunEventModel", back_populates="run", cascade="all, delete-orphan",
        order_by="RunEventModel.sequence"
    )


class RunEventModel(Base):
    """Database model for execution trace entries."""
    __tablename__ = "run_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    run_id = Column(String, ForeignKey("pipeline_runs.id"), nullable=False, index=True)
    sequence = Column(Integer, nullable=False)
    timestamp = Column(DateTime, nullable=False)
    event_type = Column(String, nullable=False)  # node_start, node_retry, node_complete, ...
    node_id = Column(String)
    attempt = Column(Integer)
    message = Column(Text, nullable=False, default="")

    run = relationship("RunModel", back_populates="events")


class SavedArtifactModel(Base):
    """Artifacts persisted by output_save nodes."""
    __tablename__ = "saved_artifacts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    workflow_id = Column(String, nullable=False, index=True)
    run_id = Column(String, nullable=False, index=True)
    node_id = Column(String, nullable=False)
    source_node_id = Column(String)
    kind = Column(String, nullable=False)
    uri = Column(Text)
    content = Column(Text)
    mime_type = Column(String)
    artifact_metadata = Column(JSON)
    created_at = Column(DateTime, default=datetime.utcnow)
