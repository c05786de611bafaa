"""
SQLAlchemy model for the job_store table — a durable key/value mirror of job records.

One row per job: key = "job:<id>", value = JSON-serialized JobRecord.
"""
from sqlalchemy import Column, String, Text, DateTime, func
from app.database import Base


class JobEntry(Base):
    __tablename__ = "job_store"

    key = Column(String(128), primary_key=True)
    value = Column(Text, nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)
