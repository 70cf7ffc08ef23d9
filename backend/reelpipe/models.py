import uuid
from datetime import datetime, timezone
from sqlalchemy.orm import declarative_base
from sqlalchemy import Column, String, Integer, DateTime, Text, ForeignKey, UniqueConstraint, Index, func, JSON
Base = declarative_base()


class JobType:
    MERGE = "merge"
    AI_GENERATE = "ai_generate"


class JobStatus:
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    TERMINAL = (COMPLETED, FAILED)
    ACTIVE = (PENDING, PROCESSING)


StepStatus = JobStatus


def utcnow() -> datetime:
    """Naive UTC timestamp, matching what the database hands back."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid.uuid4())


class Job(Base):
    __tablename__ = "jobs"
    id = Column(String, primary_key=True, default=new_id)
    type = Column(String, nullable=False)
    status = Column(String, nullable=False, default=JobStatus.PENDING, index=True)
    progress = Column(Integer, nullable=False, default=0)
    # Stored for the caller's bookkeeping; nothing posts to it.
    callback_url = Column(String, nullable=True)
    input_data = Column(JSON, nullable=True)
    output_url = Column(String, nullable=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())


class JobStep(Base):
    __tablename__ = "job_steps"
    __table_args__ = (
        UniqueConstraint("job_id", "step_name", name="uq_job_steps_job_step_name"),
        Index("ix_job_steps_job_order", "job_id", "step_order"),
    )
    id = Column(String, primary_key=True, default=new_id)
    job_id = Column(String, ForeignKey("jobs.id", ondelete="CASCADE"), nullable=False)
    step_name = Column(String, nullable=False)
    step_order = Column(Integer, nullable=False, default=0)
    status = Column(String, nullable=False, default=StepStatus.PENDING)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    output_data = Column(JSON, nullable=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime, server_default=func.now())


class RequestCounter(Base):
    """Fixed-window submission counter keyed by requester."""
    __tablename__ = "request_counters"
    key = Column(String, primary_key=True)
    count = Column(Integer, nullable=False, default=0)
    reset_at = Column(DateTime, nullable=False)
