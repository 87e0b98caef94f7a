"""
Exceptions raised by the email jobs feature.
"""


class JobStoreError(Exception):
    """Base error for job/batch persistence."""


class JobStoreUnavailableError(JobStoreError):
    """Redis could not be reached; callers should answer 503."""

    def __init__(self, operation: str):
        super().__init__(f"Job store unavailable during {operation}")
        self.operation = operation


class JobNotFoundError(JobStoreError):
    def __init__(self, kind: str, identifier: str):
        super().__init__(f"{kind.capitalize()} {identifier} not found")
        self.kind = kind
        self.identifier = identifier


class InvalidTransitionError(Exception):
    """A job status change that the state machine does not allow."""

    def __init__(self, job_id: str, status: str, event: str):
        super().__init__(f"Cannot apply '{event}' to job {job_id} in status '{status}'")
        self.job_id = job_id
        self.status = status
        self.event = event


class LiveJobConflictError(InvalidTransitionError):
    """Another job for the same session, type and recipient is still live."""

    def __init__(self, job_id: str, live_job_id: str, live_status: str):
        Exception.__init__(
            self,
            f"Job {live_job_id} for the same session, type and recipient is already "
            f"'{live_status}'; not re-delivering {job_id}",
        )
        self.job_id = job_id
        self.status = live_status
        self.event = "requeue"
        self.live_job_id = live_job_id
