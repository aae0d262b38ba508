"""Exception types raised by the queue engine."""


class QueueError(Exception):
    """Base class for queue errors."""


class SubmissionError(QueueError, ValueError):
    """Submission rejected before anything was written."""


class StoreError(QueueError):
    """The shared store could not be read or written."""


class PermanentJobError(QueueError):
    """Failure that retrying cannot fix; the job goes straight to failed."""


class StageError(QueueError):
    """A critical pipeline stage failed and the attempt was aborted."""

    def __init__(self, stage: str, cause: BaseException):
        self.stage = stage
        self.cause = cause
        super().__init__(f"Failed at stage {stage}: {cause}")


class ArtifactVerificationError(QueueError):
    """Pipeline returned without a usable artifact reference."""
