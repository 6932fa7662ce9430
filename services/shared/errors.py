"""Error taxonomy for the decision pipeline.

Every error carries a machine-readable ``code`` so callers receive a reason
code rather than a bare exception message.
"""


class PipelineError(Exception):
    """Base class for pipeline errors."""

    code = "PIPELINE_ERROR"

    def __init__(self, message: str, *, code: str | None = None) -> None:
        super().__init__(message)
        if code is not None:
            self.code = code

    @property
    def message(self) -> str:
        return str(self)


class JobValidationError(PipelineError):
    """Malformed job request; rejected at submission, never queued."""

    code = "VALIDATION_ERROR"


class ExtractionFailure(PipelineError):
    """No InvoiceDraft could be produced. Fatal to the job."""

    code = "EXTRACTION_FAILED"


class CollaboratorUnavailable(PipelineError):
    """A remote collaborator (OCR, narrative) could not be reached."""

    code = "COLLABORATOR_UNAVAILABLE"

    def __init__(self, collaborator: str, message: str) -> None:
        super().__init__(f"{collaborator}: {message}")
        self.collaborator = collaborator


class StageTimeout(PipelineError):
    """An analysis stage exceeded its time budget."""

    code = "STAGE_TIMEOUT"

    def __init__(self, stage: str, timeout: float) -> None:
        super().__init__(f"Stage '{stage}' timed out after {timeout:g}s")
        self.stage = stage
        self.timeout = timeout


class ReconciliationTimeout(PipelineError):
    """No payment was correlated before the reconciliation deadline."""

    code = "RECONCILIATION_SKIPPED"


class InvalidTransition(PipelineError):
    """A job state transition not allowed by the state machine."""

    code = "INVALID_TRANSITION"


class DecisionNotPersisted(PipelineError):
    """A terminal decision could not be written to the decision store."""

    code = "PERSISTENCE_FAILED"
