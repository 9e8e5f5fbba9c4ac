class IngestionError(Exception):
    """Base class for every failure raised by the parts ingestion pipeline."""


class FileReadError(IngestionError):
    """The source file is missing or cannot be opened."""


class FileFormatError(IngestionError):
    """The source file is not a supported or readable spreadsheet, CSV or archive."""


class EmptyFileError(IngestionError):
    """The source file has no usable header row or no data rows."""


class ChunkProcessingError(IngestionError):
    """A single chunk could not be processed. Sibling chunks are unaffected."""


class UpsertTransactionError(IngestionError):
    """A batch of rows was rolled back while upserting parts."""


class ExternalServiceError(IngestionError):
    """Object storage or a remote catalog API call failed."""


class ReferenceNotFound(IngestionError):
    """No warehouse reference entry matches a part."""


class ProcessingCancelled(IngestionError):
    """The owning upload was cancelled while its rows were being processed."""
