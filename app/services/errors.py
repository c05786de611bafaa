"""Domain exceptions raised by the orchestrator, job store and circuit breakers."""


class OrchestratorError(Exception):
    """Base class for orchestrator errors."""


class InvalidJobRequest(OrchestratorError):
    """Submission failed shape validation; no record was created."""


class JobStoreError(OrchestratorError):
    """The durable job store could not complete a read or write."""


class InvalidTransitionError(OrchestratorError):
    """A job record was asked to move along an edge the state machine does not allow."""

    def __init__(self, job_id: str, status: str, action: str):
        self.job_id = job_id
        self.status = status
        self.action = action
        super().__init__(f"Job {job_id}: cannot {action} while {status}")


class CircuitOpenError(OrchestratorError):
    """Raised when a circuit breaker is open and the call is rejected."""

    def __init__(self, service: str):
        self.service = service
        super().__init__(f"Circuit breaker OPEN for {service} — request rejected")


class TerminalJobError(OrchestratorError):
    """
    Raised by a work function for failures that retrying cannot fix
    (e.g. malformed input discovered mid-pipeline). Only honoured when the
    orchestrator runs with a classifier that checks for it.
    """
