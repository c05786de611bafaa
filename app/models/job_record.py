"""
Job request and job record models for the content orchestrator.

A JobRecord is the state machine for one generate/refresh request:

    queued → processing → completed
                  ↺ (retry)  → failed

Records are serialized with camelCase keys (requestId, totalSteps, ...) both
in the job store and in API responses.
"""
import random
import string
import time
from enum import Enum
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr
from pydantic.alias_generators import to_camel

from app.services.errors import InvalidTransitionError

_ID_ALPHABET = string.digits + string.ascii_lowercase
_ID_SUFFIX_LEN = 9


class JobStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED})


def generate_job_id(now_ms: int) -> str:
    """job_<epoch-ms>_<9 base36 chars>"""
    suffix = "".join(random.choices(_ID_ALPHABET, k=_ID_SUFFIX_LEN))
    return f"job_{now_ms}_{suffix}"


class JobRequest(BaseModel):
    """Submission payload. Unknown keys are kept and passed to the work function."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
        extra="allow",
        str_strip_whitespace=True,
    )

    keyword: str = Field(min_length=1)
    mode: Literal["generate", "refresh"]
    request_id: str = Field(min_length=1)
    client_id: str = Field(min_length=1)
    timestamp: int = Field(default_factory=lambda: int(time.time() * 1000))

    # Work-function inputs
    model: Optional[str] = None
    existing_content: Optional[str] = None
    auxiliary: Optional[Dict[str, Any]] = None


class JobRecord(BaseModel):
    """Lifecycle record for one job. Only the orchestrator mutates it."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str
    request_id: str
    client_id: str
    status: JobStatus = JobStatus.QUEUED

    step: int = 0
    total_steps: int = 0
    step_name: str = ""

    result: Optional[Any] = None
    error: Optional[str] = None

    created_at: int
    started_at: Optional[int] = None
    completed_at: Optional[int] = None

    retry_count: int = 0
    max_retries: int = Field(default=5, ge=0)
    last_attempt_at: Optional[int] = None

    # Highest step reported in the current attempt
    _attempt_step: int = PrivateAttr(default=0)

    @classmethod
    def new(cls, request: JobRequest, now_ms: int, max_retries: int = 5, job_id: Optional[str] = None) -> "JobRecord":
        return cls(
            id=job_id or generate_job_id(now_ms),
            request_id=request.request_id,
            client_id=request.client_id,
            status=JobStatus.QUEUED,
            created_at=now_ms,
            max_retries=max_retries,
        )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _require(self, status: JobStatus, action: str) -> None:
        if self.status != status:
            raise InvalidTransitionError(self.id, self.status.value, action)

    def start(self, now_ms: int) -> None:
        self._require(JobStatus.QUEUED, "start")
        self.status = JobStatus.PROCESSING
        self.started_at = now_ms
        self.step = 1
        self._attempt_step = 1

    def advance(self, step: int, total_steps: int, step_name: str) -> None:
        self._require(JobStatus.PROCESSING, "report progress")
        # A late or out-of-order tick never moves step backwards within an attempt
        self.step = max(step, self._attempt_step)
        self._attempt_step = self.step
        self.total_steps = total_steps
        self.step_name = step_name

    def complete(self, result: Any, now_ms: int) -> None:
        self._require(JobStatus.PROCESSING, "complete")
        self.status = JobStatus.COMPLETED
        self.result = result
        self.completed_at = now_ms

    def can_retry(self) -> bool:
        return self.status == JobStatus.PROCESSING and self.retry_count < self.max_retries

    def schedule_retry(self, now_ms: int) -> None:
        self._require(JobStatus.PROCESSING, "retry")
        if self.retry_count >= self.max_retries:
            raise InvalidTransitionError(self.id, self.status.value, "retry past maxRetries")
        self.retry_count += 1
        self.last_attempt_at = now_ms
        self._attempt_step = 0

    def fail(self, error: str, now_ms: int) -> None:
        self._require(JobStatus.PROCESSING, "fail")
        self.status = JobStatus.FAILED
        self.error = error
        self.completed_at = now_ms

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)

    @classmethod
    def from_json(cls, raw: str) -> "JobRecord":
        return cls.model_validate_json(raw)


class SubmitAck(BaseModel):
    """202 body returned by submit: {jobId, status, requestId}."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    job_id: str
    status: JobStatus = JobStatus.QUEUED
    request_id: str

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)
