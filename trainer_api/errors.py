from typing import Optional


class TrainerError(Exception):
    """Base class for errors raised by the trainer service."""


class ValidationError(TrainerError):
    """Bad or insufficient input. Never retried."""


class TransportError(TrainerError):
    """A remote endpoint failed or could not be reached."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ExtractionError(TrainerError):
    """The weights archive could not be expanded."""


class AmbiguousArtifactError(ExtractionError):
    """More than one candidate weights file was found."""


class ArtifactNotFoundError(TrainerError):
    """No weights file was found in the extracted archive."""


class UploadError(TrainerError):
    """An object storage upload failed."""


class StageTimeoutError(TrainerError):
    """A pipeline stage did not finish in time."""


class PipelineError(TrainerError):
    def __init__(self, stage: str, job_id: str, cause: Exception):
        super().__init__(f"{stage} stage failed for job {job_id}: {cause}")
        self.stage = stage
        self.job_id = job_id
        self.cause = cause
