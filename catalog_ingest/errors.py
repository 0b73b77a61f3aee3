"""Exception types raised by the ingestion core."""


class IngestionError(Exception):
    """Base class for ingestion failures that should fail the current job."""


class UnknownJobKindError(IngestionError):
    """Raised when a claimed job has a kind no handler is registered for."""

    def __init__(self, kind: str) -> None:
        super().__init__(f"Unknown ingestion job kind: {kind}")
        self.kind = kind


class InvalidJobPayloadError(IngestionError):
    """Raised when a job payload does not validate against its kind's schema."""

    def __init__(self, kind: str, detail: str) -> None:
        super().__init__(f"Invalid payload for {kind}: {detail}")
        self.kind = kind


class JobNotFoundError(IngestionError):
    """Raised when a job id does not exist."""

    def __init__(self, job_id: str) -> None:
        super().__init__(f"Ingestion job not found: {job_id}")
        self.job_id = job_id
