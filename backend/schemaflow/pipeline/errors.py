from __future__ import annotations

from schemaflow.models.file_error import ErrorSeverity, ErrorType


class PipelineError(Exception):
    """Base for every failure the upload pipeline reports.

    ``stage`` names the coordinator step that failed and is carried on the
    ``file:error`` event; ``error_type`` and ``severity`` feed the FileError
    record written for file-scoped failures.
    """

    stage = "pipeline"
    error_type = ErrorType.SYSTEM
    severity = ErrorSeverity.HIGH
    fatal = True

    def __init__(
        self,
        message: str,
        *,
        file_id: int | None = None,
        status_code: int | None = None,
        stage: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.file_id = file_id
        self.status_code = status_code
        if stage is not None:
            self.stage = stage


class FileValidationError(PipelineError):
    stage = "validation"
    error_type = ErrorType.VALIDATION
    severity = ErrorSeverity.MEDIUM


class DuplicateDetectedError(PipelineError):
    stage = "transmission"
    error_type = ErrorType.VALIDATION
    severity = ErrorSeverity.LOW
    fatal = False


class TransportError(PipelineError):
    stage = "transmission"


class SchemaFetchError(PipelineError):
    stage = "schema"
    error_type = ErrorType.DATABASE


class HeaderExtractionError(PipelineError):
    stage = "extraction"
    error_type = ErrorType.PARSING
    severity = ErrorSeverity.LOW
    fatal = False


class MappingSaveError(PipelineError):
    stage = "mapping"
    error_type = ErrorType.DATABASE


class ActivationError(PipelineError):
    stage = "activation"


class ProcessingTimeoutError(PipelineError):
    stage = "polling"
    severity = ErrorSeverity.LOW
    fatal = False


class TooLargeFileError(PipelineError):
    stage = "activation"
    error_type = ErrorType.VALIDATION
