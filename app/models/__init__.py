# Models package
from app.models.job_entry import JobEntry
from app.models.job_record import JobRecord, JobRequest, JobStatus, SubmitAck

__all__ = [
    "JobEntry",
    "JobRecord",
    "JobRequest",
    "JobStatus",
    "SubmitAck",
]
