"""
Database models for the build engine.
"""

from sqlalchemy import Boolean, Column, String, DateTime, ForeignKey, Integer, Text, JSON
from sqlalchemy.orm import declarative_base
from sqlalchemy.sql import func

Base = declarative_base()

class PipelineRow(Base):
    __tablename__ = "pipelines"

    id = Column(Integer, primary_key=True, autoincrement=True)
    project_id = Column(Integer, nullable=False, index=True)
    name = Column(String(100), nullable=False)
    config = Column(Text, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

class BuildRow(Base):
    __tablename__ = "builds"

    id = Column(Integer, primary_key=True, autoincrement=True)
    pipeline_id = Column(Integer, ForeignKey("pipelines.id", ondelete="CASCADE"), nullable=False, index=True)
    branch = Column(String(255), nullable=False)
    commit = Column(String(64), nullable=False, default="")
    status = Column(String(20), nullable=False, default="pending", index=True)
    started_at = Column(DateTime)
    finished_at = Column(DateTime)
    duration = Column(Integer)
    trigger_by = Column(Integer, nullable=False)
    config = Column(JSON)
    error = Column(Text)
    created_at = Column(DateTime, nullable=False)

class BuildStepRow(Base):
    __tablename__ = "build_steps"

    id = Column(Integer, primary_key=True, autoincrement=True)
    build_id = Column(Integer, ForeignKey("builds.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    command = Column(Text, nullable=False)
    status = Column(String(20), nullable=False, default="pending")
    output = Column(Text, nullable=False, default="")
    started_at = Column(DateTime)
    finished_at = Column(DateTime)
    duration = Column(Integer)
    step_order = Column(Integer, nullable=False)
    exit_code = Column(Integer)
    failure = Column(String(20))
    error = Column(Text)
