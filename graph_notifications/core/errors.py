from enum import StrEnum

_TRANSIENT_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})


class FailureReason(StrEnum):
    transcript_not_ready = "TranscriptNotReady"
    summarization_error = "SummarizationError"
    persistence_error = "PersistenceError"
    upstream_error = "UpstreamError"
    config_error = "ConfigError"
    validation_error = "ValidationError"
    timeout = "Timeout"


class PipelineError(Exception):
    reason = FailureReason.upstream_error


class ConfigError(PipelineError):
    reason = FailureReason.config_error


class UpstreamError(PipelineError):
    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        transient: bool | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        if transient is None:
            transient = status_code is None or status_code in _TRANSIENT_STATUS_CODES
        self.transient = transient


class ValidationError(PipelineError):
    reason = FailureReason.validation_error


class TranscriptNotReady(PipelineError):
    reason = FailureReason.transcript_not_ready


class SummarizationError(PipelineError):
    reason = FailureReason.summarization_error


class ProcessingTimeout(PipelineError):
    reason = FailureReason.timeout


class PersistenceError(PipelineError):
    reason = FailureReason.persistence_error
