"""Error taxonomy for the ingestion pipeline.

Every stage raises a subclass of :class:`PipelineError`. The runner catches
them at stage boundaries and keeps only the first one per run.
"""


class PipelineError(Exception):
    pass


class TransportError(PipelineError):
    """Network or HTTP failure. Retried only around language-model calls."""


class FetchError(TransportError):
    pass


class SourceStatusError(TransportError):
    pass


class DownloadError(TransportError):
    pass


class LLMTransportError(TransportError):
    pass


class ValidationError(PipelineError):
    """Model output or input data violates a required shape."""


class ParseError(ValidationError):
    pass


class InvalidLinkError(ValidationError):
    pass


class ResponseFormatError(ValidationError):
    pass


class InvalidPayloadError(ValidationError):
    pass


class LinkNotFoundError(ValidationError):
    def __init__(self, source_url: str, error_code: str) -> None:
        super().__init__(f"link extraction for {source_url} returned {error_code}")
        self.source_url = source_url
        self.error_code = error_code


class StructuralError(PipelineError):
    """Archive or spreadsheet is missing an expected marker."""


class ArchiveError(StructuralError):
    pass


class ParticipantsNotFoundError(StructuralError):
    pass


class HeaderNotFoundError(StructuralError):
    pass


class NoDataRowsError(StructuralError):
    pass


class BudgetExceededError(PipelineError):
    pass


class PayloadTooLargeError(BudgetExceededError):
    pass


class ExtractionError(PipelineError):
    pass


class RefreshInProgressError(PipelineError):
    pass


class RefreshCancelledError(PipelineError):
    pass
